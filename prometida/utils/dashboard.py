"""Pure helpers behind the home and daily screens."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Dict, Optional

from ..config import RELATIONSHIP_START
from ..models import MoodCategory

DAILY_QUESTIONS = [
    "¿Cuál es tu recuerdo favorito de este mes?",
    "¿A dónde te gustaría viajar mañana si pudieras?",
    "¿Qué es lo que más valoras de nuestra relación?",
    "¿Cuál fue la primera impresión que tuviste de mí?",
    "¿Qué canción te recuerda a nosotros?",
    "¿Qué comida te gustaría que cocináramos juntos?",
    "¿Cuál es tu sueño más grande en este momento?",
]

MOOD_LABELS: Dict[MoodCategory, str] = {
    MoodCategory.HAPPY: "Feliz",
    MoodCategory.EXCITED: "Emocionado",
    MoodCategory.NEUTRAL: "Normal",
    MoodCategory.TIRED: "Cansado",
    MoodCategory.SAD: "Triste",
}

MOOD_EMOJI: Dict[MoodCategory, str] = {
    MoodCategory.HAPPY: "😊",
    MoodCategory.SAD: "😢",
    MoodCategory.NEUTRAL: "😐",
    MoodCategory.EXCITED: "🤩",
    MoodCategory.TIRED: "😴",
}


@dataclass
class TimeLeft:
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def time_left(target: datetime, now: Optional[datetime] = None) -> TimeLeft:
    """Whole days/hours/minutes/seconds until ``target``; zero once it has passed."""

    now = now or datetime.now(timezone.utc)
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    remaining = int((target - now).total_seconds())
    if remaining <= 0:
        return TimeLeft()
    minutes, seconds = divmod(remaining, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    return TimeLeft(days=days, hours=hours, minutes=minutes, seconds=seconds)


def days_together(today: Optional[date] = None, start: date = RELATIONSHIP_START) -> int:
    today = today or date.today()
    return max((today - start).days, 0)


def daily_question(today: Optional[date] = None) -> str:
    # Same rotation as the web client: day of the year modulo the list length.
    today = today or date.today()
    return DAILY_QUESTIONS[today.timetuple().tm_yday % len(DAILY_QUESTIONS)]


def mood_feedback(mood: MoodCategory) -> str:
    if mood in (MoodCategory.HAPPY, MoodCategory.EXCITED):
        return f"¡Qué alegría que estés {MOOD_LABELS[mood]}! 🌟"
    if mood == MoodCategory.NEUTRAL:
        return "Un día tranquilo está bien 🍃"
    return "Te mando un abrazo enorme ❤️"

