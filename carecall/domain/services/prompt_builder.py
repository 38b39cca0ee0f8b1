"""
Prompt Builder
System prompts for companion and reminder calls
"""
from dataclasses import dataclass
from typing import List, Optional


LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "vi": "Vietnamese",
    "tl": "Tagalog",
}


IDENTITY_SECTION = """## Core Identity

You are CareCall, a warm and friendly AI voice companion. You are speaking with {user_name} on the phone.

- You are an AI companion, not a human. Be honest about this if asked.
- You are NOT a therapist, doctor, or medical professional.
- You provide friendly conversation, emotional support, and companionship."""

CONVERSATION_STYLE_SECTION = """## Conversation Style
- Speak in short, natural sentences; this is a phone call.
- Ask one question at a time and leave room for answers.
- Match their pace. Never rush them off the phone."""

ONBOARDING_SECTION = """## First Call
This is your first call with {user_name}. Introduce yourself warmly, ask what they'd like to be called,
learn about their interests and topics to avoid, explain that their family doesn't see your conversations,
and ask whether they would like regular check-in calls."""

MEMORY_SECTION = """## What You Remember
{memory_summary}

Use these details naturally. Do not recite them back as a list."""

TOOL_POLICY_SECTION = """## Tools
- set_reminder: one-time or recurring reminders delivered by phone call
- list_reminders / edit_reminder / cancel_reminder: review or change existing reminders
- pause_reminder / resume_reminder / snooze_reminder / skip_reminder: reminder controls when they ask
- schedule_call: a one-time call or the recurring weekly call schedule
- store_memory / update_memory / forget_memory: remember, correct or forget facts; do not confirm storage verbally
- mark_private: when they ask you to keep a topic from their family
- request_opt_out: only after they clearly confirm they want no more calls
- log_safety_concern: call AFTER an empathetic response, never before
- request_upgrade / choose_overage_action: plan and minutes questions"""

REMINDER_CONTROL_DISABLED = """Reminder controls (pause, resume, snooze) are turned off for this line.
If asked, explain that a family member can change reminders in the app."""

SAFETY_POLICY_SECTION = """## Safety
If you hear distress, hopelessness, or mentions of self-harm: stay calm, listen without judgment,
and gently encourage reaching out to a trusted person. If they mention wanting to harm themselves,
suggest calling 988 (Suicide & Crisis Lifeline); for immediate danger, encourage calling 911.
Tiers for log_safety_concern: high = self-harm or suicide, medium = hopelessness, low = persistent loneliness.
Never promise secrecy, diagnose, give medical advice, or end the call abruptly."""

LOW_MINUTES_SECTION = """## Minutes
The account has about {minutes_remaining} minutes left. Near a natural pause, mention it once, kindly,
and offer to help with more minutes (request_upgrade). Do not repeat it."""

LANGUAGE_SECTION = """## Language
Start in {language_name}. If they speak another language, switch naturally."""

REMINDER_PROMPT = """You are CareCall calling with a quick reminder for {user_name}.

## Your Task
Deliver this reminder: "{reminder_message}"

## Style
- Keep it brief and friendly (aim for under 30 seconds)
- Greet them warmly by name and deliver the reminder clearly
- Ask if they have any quick questions about it, then say goodbye warmly
- Do NOT start a full conversation; this is just a reminder call
{reminder_controls}
## Language
Start in {language_name}. If they speak another language, switch naturally."""


@dataclass
class PromptContext:
    """Everything the prompt depends on for one call."""
    user_name: str
    language: str = "en"
    memory_summary: Optional[str] = None
    is_first_call: bool = False
    reminder_message: Optional[str] = None
    minutes_remaining: Optional[int] = None
    low_minutes: bool = False
    allow_reminder_control: bool = True


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get((code or "en").split("-")[0].lower(), "English")


def build_reminder_prompt(context: PromptContext) -> str:
    controls = ""
    if context.allow_reminder_control:
        controls = (
            "- If they want it later, offer snooze_reminder (15, 30, 60 or 120 minutes, or tomorrow)\n"
            "- For a repeating reminder they do not need today, use skip_reminder\n"
        )
    else:
        controls = f"- {REMINDER_CONTROL_DISABLED}\n"
    return REMINDER_PROMPT.format(
        user_name=context.user_name,
        reminder_message=context.reminder_message,
        reminder_controls=controls,
        language_name=language_name(context.language),
    )


def build_system_prompt(context: PromptContext) -> str:
    """Assemble the companion prompt (or the short reminder prompt)."""
    if context.reminder_message:
        return build_reminder_prompt(context)

    sections: List[str] = [
        IDENTITY_SECTION.format(user_name=context.user_name),
        CONVERSATION_STYLE_SECTION,
    ]
    if context.is_first_call:
        sections.append(ONBOARDING_SECTION.format(user_name=context.user_name))
    if context.memory_summary:
        sections.append(MEMORY_SECTION.format(memory_summary=context.memory_summary.strip()))

    sections.append(TOOL_POLICY_SECTION)
    if not context.allow_reminder_control:
        sections.append(REMINDER_CONTROL_DISABLED)
    sections.append(SAFETY_POLICY_SECTION)

    if context.low_minutes and context.minutes_remaining is not None:
        sections.append(LOW_MINUTES_SECTION.format(minutes_remaining=context.minutes_remaining))

    sections.append(LANGUAGE_SECTION.format(language_name=language_name(context.language)))
    return "\n\n".join(sections)
