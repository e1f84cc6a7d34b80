"""
Welfare-Check Escalation & Dispatch Engine
==========================================

Turns a monitored senior's missed wellness check-in into a prioritized
alert for a human responder, tracks the responder's handling of that alert
through a structured outcome report, and maintains the per-person
emergency-response profile the alert carries.

The engine never acts on its own behalf.  Every alert is a request for a
human welfare check, and every alert is closed either by a responder's
report or by the person checking in again.
"""

__version__ = "0.1.0"
