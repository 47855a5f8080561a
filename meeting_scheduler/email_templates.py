"""
Scheduling Email Templates
Plain-text outreach messages; every template returns (subject, body)
"""

from typing import List, Optional, Tuple

from .config import SENDER_NAME, SENDER_TITLE

MEETING_TYPE_LABELS = {
    "discovery": "discovery call",
    "demo": "demo",
    "follow_up": "follow-up call",
    "technical": "technical discussion",
    "technical_deep_dive": "technical deep dive",
    "executive": "executive briefing",
    "executive_briefing": "executive briefing",
    "pricing_negotiation": "pricing discussion",
    "implementation_planning": "implementation planning session",
    "check_in": "check-in call",
    "trial_kickoff": "trial kickoff",
    "custom": "meeting",
}


def format_meeting_type(meeting_type: Optional[str]) -> str:
    return MEETING_TYPE_LABELS.get(meeting_type or "", "meeting")


def _signature(sender_name: Optional[str] = None, sender_title: Optional[str] = None) -> str:
    name = sender_name or SENDER_NAME
    title = sender_title if sender_title is not None else SENDER_TITLE
    return f"Best,\n{name}" + (f"\n{title}" if title else "")


def _options(times: List[str]) -> str:
    return "\n".join(f"  {i + 1}. {t}" for i, t in enumerate(times))


def _extras(social_proof: Optional[str], seasonal_note: Optional[str]) -> str:
    parts = []
    if seasonal_note:
        parts.append(seasonal_note)
    if social_proof:
        parts.append(social_proof)
    return "\n\n".join(parts) + "\n\n" if parts else ""


def initial_outreach_template(
    contact_name: str,
    meeting_type: str,
    title: str,
    times: List[str],
    company_name: Optional[str] = None,
    context: Optional[str] = None,
    seasonal_note: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    subject = title
    intro = f"I'd love to set up a {label}"
    if company_name:
        intro += f" with the {company_name} team"
    body = f"""Hi {contact_name},

{intro}.{(" " + context.strip()) if context else ""}

{_extras(None, seasonal_note)}Would any of these times work for you?

{_options(times)}

Just reply with the option that suits you, or suggest another time.

{_signature(sender_name)}"""
    return subject, body


def follow_up_template(
    attempt: int,
    contact_name: str,
    meeting_type: str,
    title: str,
    times: List[str],
    social_proof: Optional[str] = None,
    seasonal_note: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    subject = f"Re: {title}"
    opener = (
        f"Following up on my note about a {label}."
        if attempt <= 2
        else f"I wanted to try one more time to find a slot for a {label}."
    )
    body = f"""Hi {contact_name},

{opener}

{_extras(social_proof, seasonal_note)}Here are a few fresh options:

{_options(times)}

If none of these work, let me know what does and I'll make it happen.

{_signature(sender_name)}"""
    return subject, body


def alternatives_template(
    contact_name: str,
    meeting_type: str,
    title: str,
    times: List[str],
    unavailable_time: Optional[str] = None,
    social_proof: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    subject = f"Re: {title}"
    lead = (
        f"Thanks for getting back to me! Unfortunately {unavailable_time} no longer works on our side."
        if unavailable_time
        else "Thanks for getting back to me!"
    )
    body = f"""Hi {contact_name},

{lead} Could one of these work for our {label} instead?

{_extras(social_proof, None)}{_options(times)}

{_signature(sender_name)}"""
    return subject, body


def no_show_follow_up_template(
    no_show_number: int,
    contact_name: str,
    meeting_type: str,
    times: Optional[List[str]] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    options = f"\n\nA few times that could work:\n\n{_options(times)}" if times else ""

    if no_show_number <= 1:
        subject = "Missed you - quick reschedule?"
        text = (
            f"I noticed we weren't able to connect for our scheduled {label} today. No worries, I know things come up!"
            f"\n\nWould you like to reschedule for later this week? I'm flexible on timing.{options}"
            "\n\nJust let me know what works for you."
        )
    elif no_show_number == 2:
        subject = "Let's find a better time"
        text = (
            f"We've had some trouble connecting for our {label}. I want to make sure we find a time that actually "
            f"works for your schedule.{options}\n\nLooking forward to connecting."
        )
    elif no_show_number == 3:
        subject = "Checking in"
        text = (
            "I wanted to check in since we haven't been able to connect. I understand things get busy, and I don't "
            f"want to keep reaching out if timing isn't right.{options}\n\nEither way, I'm here when you're ready."
        )
    else:
        subject = "Let's reconnect when timing is better"
        text = (
            "I know we've had some trouble finding time to connect. Rather than keep reaching out, I'll pause for now."
            f"\n\nIf and when you'd like to discuss a {label}, just reply to this email and we'll set something up."
        )

    return subject, f"Hi {contact_name},\n\n{text}\n\n{_signature(sender_name)}"


def confirmation_template(
    contact_name: str,
    meeting_type: str,
    title: str,
    time_display: str,
    web_link: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    subject = f"Confirmed: {title} - {time_display}"
    link = f"\n\nCalendar details: {web_link}" if web_link else ""
    body = f"""Hi {contact_name},

Great, you're all set! Our {label} is confirmed for {time_display}. A calendar invite is on its way.{link}

Looking forward to it.

{_signature(sender_name)}"""
    return subject, body


def reminder_template(
    contact_name: str,
    meeting_type: str,
    title: str,
    time_display: str,
    web_link: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Tuple[str, str]:
    label = format_meeting_type(meeting_type)
    subject = f"Reminder: {title} - {time_display}"
    link = f"\n\nJoin details: {web_link}" if web_link else ""
    body = f"""Hi {contact_name},

Just a quick reminder about our {label} on {time_display}.{link}

If something has come up, reply here and we'll find another time.

{_signature(sender_name)}"""
    return subject, body
