"""
Scheduling Domain

Negotiates a meeting time with external prospects over email:

- schemas.py              # Request, attendee, inbound reply and interpretation schemas
- repository.py           # Queries, compare-and-set updates, claim tokens
- state_machine.py        # The only writer of request status; audit actions
- grounding.py            # Date reference table for reply interpretation
- interpreter.py          # AI reply classification and date grounding
- availability_service.py # Free/busy checks and candidate slots
- composer.py             # Outreach messages (idempotent per attempt)
- social_proof.py         # Social proof selection for follow-ups
- seasonality.py          # Seasonal framing and blackout dates
- no_show.py              # No-show escalation ladder
- service.py              # Orchestration of inbound replies, booking and user commands
- automation.py           # Claim-token sweep for follow-ups, reminders and no-shows
- router.py               # /scheduling endpoints
"""

from .router import router

__all__ = ["router"]
