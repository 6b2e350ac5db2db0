"""Use-case level logic.

These modules implement the clock-in/clock-out state machine and employee sync
on top of the QBO gateway in `integrations`.

They should be:
- free of web/framework code
- unit-testable with a stub gateway
"""
