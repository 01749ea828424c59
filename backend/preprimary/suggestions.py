from __future__ import annotations

import logging
from typing import Optional

from openai import OpenAI, OpenAIError


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant for pre-primary teachers. You provide educational activities and suggestions "
    "for Nursery (~3 years), LKG (~4 years), and UKG (~5 years) students. Focus on creative activities that develop "
    "social skills, pre-literacy, pre-numeracy, motor skills, and emotional development."
)

CLASS_LABELS = {
    "nursery": "Nursery (3 years)",
    "lkg": "LKG (4 years)",
    "ukg": "UKG (5 years)",
}

AREA_KEYWORDS = (
    ("pre-literacy", ("literacy", "reading", "writing", "letter", "story")),
    ("pre-numeracy", ("math", "number", "counting", "shape")),
    ("motor skill", ("motor", "physical", "movement")),
    ("social-emotional", ("social", "emotional", "feeling", "sharing")),
)

FALLBACK_ACTIVITIES = {
    "pre-literacy": [
        "Picture Book Exploration: let children name objects, colors and actions they see, and ask open-ended questions.",
        "Rhyme Time Circle: a daily circle of short action rhymes that children join in with.",
        "Letter of the Week: trace the letter in sand, shape it in play dough and hunt for objects that start with it.",
        "Storytelling with Puppets: tell a short story with hand puppets and let children repeat the key phrases.",
        "Name Recognition: name cards with each child's photo used at arrival and during transitions.",
    ],
    "pre-numeracy": [
        "Counting Songs: finger-counting songs such as 'Five Little Monkeys'.",
        "Sorting Games: sort blocks, buttons or leaves by color, size or shape.",
        "Number Hunt: hide number cards around the room and have children find and name them.",
        "Counting Steps: count steps aloud when moving between areas of the classroom or playground.",
        "Calendar Routine: count the day of the month together and spot patterns on the calendar.",
    ],
    "motor skill": [
        "Sensory Bins: scooping, pouring and transferring rice or beans with small tools.",
        "Bead Threading: thread large beads on laces to build hand-eye coordination.",
        "Obstacle Course: crawl under, step over and balance along a simple indoor course.",
        "Tearing and Pasting: tear colored paper into pieces and paste them into a picture.",
        "Ball Games: rolling, throwing and catching soft balls in pairs.",
    ],
    "social-emotional": [
        "Feelings Faces: match picture cards of faces to feelings and talk about when we feel that way.",
        "Sharing Circle: each child shows a favourite object and the group asks one question about it.",
        "Helper of the Day: rotate small classroom jobs so every child practises responsibility.",
        "Turn-taking Games: simple board or ball games that need waiting for a turn.",
        "Calm Corner: a quiet space with soft toys and books for children to settle big feelings.",
    ],
    "general": [
        "Nature Walk Collage: collect leaves and flowers on a short walk and make a group collage.",
        "Movement Games: 'Simon Says' and 'Follow the Leader' for listening and gross motor skills.",
        "Pretend Play Corner: a shop or kitchen corner that encourages language and cooperation.",
        "Music and Dance: move to songs with different tempos and freeze when the music stops.",
        "Art Exploration: finger painting and printing with vegetables or leaves.",
    ],
}


def classify_prompt(prompt: str) -> tuple[str, str]:
    lowered = prompt.lower()
    class_label = "pre-primary"
    for key, label in CLASS_LABELS.items():
        if key in lowered:
            class_label = label
            break
    area = "general"
    for name, keywords in AREA_KEYWORDS:
        if any(k in lowered for k in keywords):
            area = name
            break
    return class_label, area


def fallback_suggestion(prompt: str) -> str:
    class_label, area = classify_prompt(prompt)
    lines = [f"Here are some {area} activities for {class_label} students:", ""]
    for idx, item in enumerate(FALLBACK_ACTIVITIES[area], start=1):
        lines.append(f"{idx}. {item}")
    return "\n".join(lines)


class SuggestionService:
    def __init__(self, api_key: Optional[str], base_url: str, model: str, timeout: float = 30.0, max_tokens: int = 500):
        self.model = model
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout) if api_key else None

    def suggest(self, prompt: str) -> dict:
        if self.client is None:
            logger.warning("AI suggestions requested without an API key; using fallback activities")
            return {"suggestion": fallback_suggestion(prompt), "source": "fallback"}
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=self.max_tokens,
            )
            content = response.choices[0].message.content
        except OpenAIError as exc:
            logger.error("AI suggestion request failed: %s", exc)
            return {"suggestion": fallback_suggestion(prompt), "source": "fallback"}
        if not content:
            logger.warning("AI suggestion response was empty; using fallback activities")
            return {"suggestion": fallback_suggestion(prompt), "source": "fallback"}
        return {"suggestion": content.strip(), "source": "ai"}
