import json
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scheduler.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Operator API key for the /scheduling endpoints (Authorization: Bearer <key>)
SCHEDULER_API_KEY = os.getenv("SCHEDULER_API_KEY")
# Shared secret used by the inbox sync to sign inbound reply webhooks
INBOUND_WEBHOOK_SECRET = os.getenv("INBOUND_WEBHOOK_SECRET")

# Microsoft Graph OAuth Configuration (calendar free/busy, booking, mail)
MICROSOFT_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
MICROSOFT_CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")
MICROSOFT_TENANT = os.getenv("MICROSOFT_TENANT", "common")
GRAPH_API_BASE = os.getenv("GRAPH_API_BASE", "https://graph.microsoft.com/v1.0")
# Bounded timeout for every calendar / mail call (seconds)
CALENDAR_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "15"))
MAIL_TIMEOUT_SECONDS = float(os.getenv("MAIL_TIMEOUT_SECONDS", "20"))

# AI interpretation endpoint (messages-style JSON API)
AI_API_URL = os.getenv("AI_API_URL", "https://api.anthropic.com/v1/messages")
AI_API_KEY = os.getenv("AI_API_KEY")
AI_MODEL = os.getenv("AI_MODEL", "claude-sonnet-4-20250514")
AI_MAX_TOKENS = int(os.getenv("AI_MAX_TOKENS", "1000"))
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

# Scheduling defaults
DEFAULT_TIMEZONE = os.getenv("SCHEDULER_DEFAULT_TIMEZONE", "America/New_York")
GROUNDING_DAYS = int(os.getenv("SCHEDULER_GROUNDING_DAYS", "21"))
BUSINESS_HOURS_START = int(os.getenv("SCHEDULER_BUSINESS_HOURS_START", "9"))
BUSINESS_HOURS_END = int(os.getenv("SCHEDULER_BUSINESS_HOURS_END", "17"))
AVAILABILITY_INTERVAL_MINUTES = int(os.getenv("SCHEDULER_AVAILABILITY_INTERVAL_MINUTES", "30"))
PROPOSAL_WINDOW_DAYS = int(os.getenv("SCHEDULER_PROPOSAL_WINDOW_DAYS", "14"))
PROPOSAL_MIN_LEAD_HOURS = int(os.getenv("SCHEDULER_PROPOSAL_MIN_LEAD_HOURS", "24"))
PROPOSED_TIMES_COUNT = int(os.getenv("SCHEDULER_PROPOSED_TIMES_COUNT", "3"))  # 3-4
MAX_SLOTS_PER_DAY = int(os.getenv("SCHEDULER_MAX_SLOTS_PER_DAY", "1"))

# Follow-up cadence
FOLLOW_UP_HOURS = int(os.getenv("SCHEDULER_FOLLOW_UP_HOURS", "48"))
SECOND_FOLLOW_UP_HOURS = int(os.getenv("SCHEDULER_SECOND_FOLLOW_UP_HOURS", "72"))
MAX_ATTEMPTS = int(os.getenv("SCHEDULER_MAX_ATTEMPTS", "5"))
REMINDER_HOURS_BEFORE = int(os.getenv("SCHEDULER_REMINDER_HOURS_BEFORE", "24"))
# Delay before a failed external call is retried by the next sweep
RETRY_DELAY_MINUTES = int(os.getenv("SCHEDULER_RETRY_DELAY_MINUTES", "15"))

# No-show recovery ladder
NO_SHOW_GRACE_MINUTES = int(os.getenv("NO_SHOW_GRACE_MINUTES", "30"))
NO_SHOW_FOLLOW_UP_HOURS = int(os.getenv("NO_SHOW_FOLLOW_UP_HOURS", "4"))
NO_SHOW_PAUSE_DAYS = int(os.getenv("NO_SHOW_PAUSE_DAYS", "7"))
NO_SHOW_CANCEL_AFTER = int(os.getenv("NO_SHOW_CANCEL_AFTER", "4"))
# Per-meeting-type overrides, e.g. {"executive": {"grace_minutes": 15, "cancel_after": 3}}
NO_SHOW_POLICY_OVERRIDES = json.loads(os.getenv("NO_SHOW_POLICY_OVERRIDES", "{}") or "{}")

# Automation sweep
AUTOMATION_BATCH_SIZE = int(os.getenv("AUTOMATION_BATCH_SIZE", "50"))
AUTOMATION_SWEEP_MINUTES = int(os.getenv("AUTOMATION_SWEEP_MINUTES", "5"))

# Sender identity used in outreach signatures
SENDER_NAME = os.getenv("SCHEDULER_SENDER_NAME", "Sales Team")
SENDER_TITLE = os.getenv("SCHEDULER_SENDER_TITLE", "")
