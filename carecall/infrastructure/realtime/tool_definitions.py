"""
Realtime Tool Definitions
Function schemas advertised to the realtime model in session.update
"""
from typing import Any, Dict, List


MEMORY_TYPES = ["fact", "preference", "follow_up", "context", "history", "wellbeing"]
PLAN_IDS = ["care", "comfort", "family", "payg"]


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": required,
        },
    }


_REMINDER_ID = {
    "reminder_id": {
        "type": "string",
        "description": "ID of the reminder (from list_reminders)",
    }
}

_DAYS_OF_WEEK = {
    "type": "array",
    "items": {"type": "integer", "minimum": 0, "maximum": 6},
    "description": "Days of week (0=Sunday, 1=Monday, ..., 6=Saturday)",
}


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function(
        "set_reminder",
        "Set a one-time or recurring reminder delivered by phone call. "
        "'every day at 9am' -> frequency daily; 'every Monday and Friday' -> weekly with days_of_week [1, 5]; "
        "'on the 15th of every month' -> monthly with day_of_month 15; 'every 3 days' -> custom with interval 3.",
        {
            "message": {"type": "string", "description": "The reminder message"},
            "due_at_local": {
                "type": "string",
                "description": "First occurrence, ISO 8601 in the user's local time (e.g. 2025-12-27T14:00:00)",
            },
            "is_recurring": {"type": "boolean", "description": "Whether the reminder repeats"},
            "frequency": {"type": "string", "enum": ["daily", "weekly", "monthly", "custom"]},
            "interval": {"type": "integer", "minimum": 1, "maximum": 365},
            "days_of_week": _DAYS_OF_WEEK,
            "day_of_month": {"type": "integer", "minimum": 1, "maximum": 31},
            "ends_at_local": {"type": "string", "description": "Optional ISO 8601 date when recurrence ends"},
        },
        ["message", "due_at_local"],
    ),
    _function(
        "list_reminders",
        "List the user's upcoming reminders",
        {},
        [],
    ),
    _function(
        "edit_reminder",
        "Change the message or time of an existing reminder",
        {
            **_REMINDER_ID,
            "new_message": {"type": "string"},
            "new_time_local": {"type": "string", "description": "ISO 8601 local time"},
        },
        ["reminder_id"],
    ),
    _function(
        "pause_reminder",
        "Pause a recurring reminder until the user asks to resume it",
        dict(_REMINDER_ID),
        ["reminder_id"],
    ),
    _function(
        "resume_reminder",
        "Resume a paused reminder from its next future occurrence",
        dict(_REMINDER_ID),
        ["reminder_id"],
    ),
    _function(
        "snooze_reminder",
        "Delay the reminder being delivered on this call (at most 3 times)",
        {
            **_REMINDER_ID,
            "snooze_minutes": {
                "type": "integer",
                "enum": [15, 30, 60, 120, 1440],
                "description": "Minutes to snooze; 1440 means tomorrow at the same time",
            },
        },
        ["snooze_minutes"],
    ),
    _function(
        "skip_reminder",
        "Skip the next occurrence of a recurring reminder; later occurrences still happen",
        dict(_REMINDER_ID),
        [],
    ),
    _function(
        "cancel_reminder",
        "Cancel a reminder (all future occurrences)",
        dict(_REMINDER_ID),
        ["reminder_id"],
    ),
    _function(
        "schedule_call",
        "Schedule a one-time call or update the recurring weekly call schedule",
        {
            "mode": {"type": "string", "enum": ["one_off", "update_recurring"]},
            "when": {"type": "string", "description": "For one_off: ISO 8601 local time"},
            "days_of_week": _DAYS_OF_WEEK,
            "time_local": {"type": "string", "description": "For update_recurring: HH:MM"},
        },
        ["mode"],
    ),
    _function(
        "choose_overage_action",
        "Record what the user wants to do after using their included minutes",
        {
            "action": {"type": "string", "enum": ["continue", "upgrade", "stop"]},
            "plan_id": {"type": "string", "enum": PLAN_IDS},
        },
        ["action"],
    ),
    _function(
        "request_opt_out",
        "Stop all future calls to this line. Only after the user clearly confirms.",
        {
            "confirmed": {"type": "boolean"},
            "reason": {"type": "string"},
        },
        ["confirmed"],
    ),
    _function(
        "store_memory",
        "Remember something the user shared. Do not confirm storage out loud.",
        {
            "memory_type": {"type": "string", "enum": MEMORY_TYPES},
            "key": {"type": "string", "description": "Short label, e.g. 'favorite_food'"},
            "value": {"type": "string"},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "suggest_reminder": {"type": "boolean"},
        },
        ["memory_type", "key", "value"],
    ),
    _function(
        "update_memory",
        "Correct a previously stored memory",
        {
            "existing_key": {"type": "string"},
            "new_value": {"type": "string"},
            "memory_type": {"type": "string", "enum": MEMORY_TYPES},
        },
        ["existing_key", "new_value"],
    ),
    _function(
        "forget_memory",
        "Forget something the user asked you not to remember",
        {"what_to_forget": {"type": "string"}},
        ["what_to_forget"],
    ),
    _function(
        "mark_private",
        "Keep a topic out of anything shared with the family",
        {"what_to_keep_private": {"type": "string"}},
        ["what_to_keep_private"],
    ),
    _function(
        "log_safety_concern",
        "Log a safety concern AFTER responding with empathy",
        {
            "tier": {"type": "string", "enum": ["low", "medium", "high"]},
            "signals": {"type": "string", "description": "What was said that raised concern"},
            "action_taken": {"type": "string", "enum": ["none", "suggested_988", "suggested_911"]},
        },
        ["tier", "signals", "action_taken"],
    ),
    _function(
        "request_upgrade",
        "Help the user upgrade their plan or get more minutes",
        {
            "plan_id": {"type": "string", "enum": PLAN_IDS},
            "send_link": {"type": "boolean"},
        },
        [],
    ),
]

TOOL_NAMES = frozenset(tool["name"] for tool in TOOL_DEFINITIONS)
