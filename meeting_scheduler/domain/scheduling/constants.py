"""Scheduling status, action and claim-token vocabularies"""

# Request statuses
NEGOTIATING = "negotiating"
AWAITING_RESPONSE = "awaiting_response"
CONFIRMED = "confirmed"
DECLINED = "declined"
CANCELLED = "cancelled"

OPEN_STATUSES = (NEGOTIATING, AWAITING_RESPONSE)
NON_TERMINAL_STATUSES = (NEGOTIATING, AWAITING_RESPONSE, CONFIRMED)

# Attendee side that receives outreach
SIDE_EXTERNAL = "external"

# Actors
ACTOR_PROSPECT = "prospect"
ACTOR_SYSTEM = "system"
ACTOR_USER = "user"

# Audit action types
ACTION_EMAIL_SENT = "email_sent"
ACTION_EMAIL_RECEIVED = "email_received"
ACTION_RESPONSE_ANALYZED = "response_analyzed"
ACTION_MEETING_BOOKED = "meeting_booked"
ACTION_DECLINED = "declined"
ACTION_CANCELLED = "cancelled"
ACTION_TIME_CONFLICT = "time_conflict"
ACTION_REMINDER_SENT = "reminder_sent"
ACTION_FOLLOW_UP_SENT = "follow_up_sent"
ACTION_NO_SHOW_DETECTED = "no_show_detected"
ACTION_ESCALATED = "escalated"
ACTION_COMPLETED = "completed"
ACTION_RESCHEDULED = "rescheduled"
ACTION_EXTERNAL_CALL_FAILED = "external_call_failed"
ACTION_DATA_INTEGRITY_ERROR = "data_integrity_error"

# Claim-token handler types
NEXT_SEND_REMINDER = "send_reminder"
NEXT_SEND_FOLLOW_UP = "send_follow_up"
NEXT_REVIEW_COUNTER_PROPOSAL = "review_counter_proposal"
NEXT_DETECT_NO_SHOW = "detect_no_show"

# Interpreter intents
INTENT_ACCEPT = "accept"
INTENT_DECLINE = "decline"
INTENT_COUNTER_PROPOSE = "counter_propose"
INTENT_QUESTION = "question"
INTENT_UNCLEAR = "unclear"

# Outbound message kinds
MESSAGE_INITIAL = "initial"
MESSAGE_FOLLOW_UP = "follow_up"
MESSAGE_ALTERNATIVES = "alternatives"
MESSAGE_NO_SHOW_FOLLOW_UP = "no_show_follow_up"

# Attention item reason codes
ATTENTION_QUESTION = "prospect_question"
ATTENTION_UNCLEAR = "unclear_response"
ATTENTION_NO_SHOW = "repeated_no_show"
ATTENTION_MAX_ATTEMPTS = "max_attempts_reached"
ATTENTION_DATA_INTEGRITY = "data_integrity"
