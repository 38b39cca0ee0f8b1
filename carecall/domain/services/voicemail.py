"""
Voicemail Messages
Short messages left when an answering machine picks up
"""
from typing import Dict, Optional


VOICEMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    "en": {
        "brief": "Hi {name}, this is CareCall. I'll call back soon. Take care!",
        "detailed": "Hi {name}, this is CareCall. I was calling for your check-in. I'll try again later. Take care!",
        "reminder": "Hi {name}, this is CareCall. I was calling to remind you: {message}. I'll try again later. Take care!",
    },
    "es": {
        "brief": "Hola {name}, soy CareCall. Te llamaré pronto. ¡Cuídate!",
        "detailed": "Hola {name}, soy CareCall. Te llamaba para tu llamada de bienestar. "
                    "Volveré a intentarlo más tarde. ¡Cuídate!",
        "reminder": "Hola {name}, soy CareCall. Te llamaba para recordarte: {message}. "
                    "Volveré a intentarlo más tarde. ¡Cuídate!",
    },
    "fr": {
        "brief": "Bonjour {name}, c'est CareCall. Je rappellerai bientôt. Prenez soin de vous!",
        "detailed": "Bonjour {name}, c'est CareCall. Je vous appelais pour votre appel de bien-être. "
                    "Je réessaierai plus tard. Prenez soin de vous!",
        "reminder": "Bonjour {name}, c'est CareCall. Je vous appelais pour vous rappeler: {message}. "
                    "Je réessaierai plus tard. Prenez soin de vous!",
    },
    "de": {
        "brief": "Hallo {name}, hier ist CareCall. Ich rufe bald wieder an. Passen Sie auf sich auf!",
        "detailed": "Hallo {name}, hier ist CareCall. Ich habe wegen Ihres Check-ins angerufen. "
                    "Ich versuche es später noch einmal. Passen Sie auf sich auf!",
        "reminder": "Hallo {name}, hier ist CareCall. Ich wollte Sie erinnern: {message}. "
                    "Ich versuche es später noch einmal. Passen Sie auf sich auf!",
    },
}


def get_voicemail_message(
    name: str,
    language: str = "en",
    behavior: str = "brief",
    reminder_message: Optional[str] = None
) -> str:
    """
    Pick the voicemail text for a line.

    `detailed` on a reminder call repeats the reminder itself; unknown
    languages fall back to English.
    """
    templates = VOICEMAIL_TEMPLATES.get((language or "en").split("-")[0].lower(), VOICEMAIL_TEMPLATES["en"])
    name = name or "there"

    if behavior == "detailed" and reminder_message:
        return templates["reminder"].format(name=name, message=reminder_message)
    if behavior == "detailed":
        return templates["detailed"].format(name=name)
    return templates["brief"].format(name=name)
