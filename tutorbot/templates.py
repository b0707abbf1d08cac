"""User-facing message templates."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Sequence

from tutorbot.timezones import validate_timezone

if TYPE_CHECKING:
    from tutorbot.conflicts import AlternativeSlot, ConflictResult


def format_day(value: datetime, timezone_name: str) -> str:
    local = value.astimezone(validate_timezone(timezone_name))
    return f"{local:%a, %b} {local.day}"


def format_clock(value: datetime, timezone_name: str) -> str:
    local = value.astimezone(validate_timezone(timezone_name))
    return f"{local.hour % 12 or 12}:{local:%M %p}"


def format_slot(value: datetime, timezone_name: str) -> str:
    return f"{format_day(value, timezone_name)} at {format_clock(value, timezone_name)}"


def event_confirmation(title: str, start: datetime, timezone_name: str) -> str:
    return f"I've scheduled {title} for {format_slot(start, timezone_name)}."


def reschedule_confirmation(title: str, start: datetime, timezone_name: str) -> str:
    return f"🔄 I've rescheduled {title} to {format_slot(start, timezone_name)}."


def deadline_confirmation(title: str, due: datetime | None, timezone_name: str) -> str:
    if due is None:
        return f"📝 I've added {title} to your tasks."
    return f"📝 I've added {title}, due {format_slot(due, timezone_name)}."


def past_date_rejection(matched_text: str | None) -> str:
    phrase = f'"{matched_text}"' if matched_text else "that time"
    return f"I can't schedule {phrase} because it's in the past. Could you suggest a future time?"


def disambiguation_question(options: Sequence[datetime], timezone_name: str) -> str:
    lines = "\n".join(f"{index}. {format_slot(option, timezone_name)}" for index, option in enumerate(options, start=1))
    return f"Which time did you mean?\n{lines}"


def rsvp_notice(user_label: str, title: str, accepted: bool) -> str:
    if accepted:
        return f"✅ {user_label} accepted {title}."
    return f"❌ {user_label} declined {title}."


def invite_message(title: str, start: datetime, timezone_name: str, note: str | None = None) -> str:
    text = f"📅 You're invited to {title} on {format_slot(start, timezone_name)}. Reply yes or no."
    if note:
        text += f"\n{note}"
    return text


def conflict_warning(
    title: str,
    result: ConflictResult,
    alternatives: Sequence[AlternativeSlot],
    timezone_name: str,
) -> str:
    """Conflict card text: first two clashes, a count of the rest, then options."""

    lines = [f"⚠️ Scheduling conflict for {title}."]
    for detail in result.conflicts[:2]:
        name = detail.slot.title or "another session"
        lines.append(
            f"- {name}: {format_slot(detail.slot.start, timezone_name)}"
            f" to {format_clock(detail.slot.end, timezone_name)}"
        )
    remaining = len(result.conflicts) - 2
    if remaining > 0:
        lines.append(f"- and {remaining} more")
    if result.recommendation:
        lines.append(result.recommendation)
    if alternatives:
        lines.append("Open times:")
        for index, slot in enumerate(alternatives, start=1):
            lines.append(f"{index}. {format_slot(slot.start, timezone_name)}")
    lines.append(f"(Times shown in {timezone_name})")
    return "\n".join(lines)


def urgent_alert(sender_label: str, text: str) -> tuple[str, str]:
    body = text if len(text) <= 140 else text[:137] + "..."
    return f"🚨 Urgent from {sender_label}", body


def event_reminder(title: str, start: datetime, timezone_name: str, reminder_type: str) -> tuple[str, str]:
    lead = "tomorrow" if reminder_type == "24h_before" else "in 2 hours"
    return f"⏰ {title} {lead}", f"{title} starts {format_slot(start, timezone_name)}."


def task_reminder(title: str, overdue: bool) -> tuple[str, str]:
    if overdue:
        return "⚠️ Task overdue", f"{title} is overdue."
    return "📚 Due today", f"{title} is due today."
