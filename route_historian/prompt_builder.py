"""
Prompt Builder Module

Builds the prompts sent to the language model and pulls the single
structured field (the highlight line) back out of its answers.

Prompt flavours:
- context lookup, standing mode: detailed, up to three places
- context lookup, driving mode: one impactful sentence
- narration: short spoken retelling of a highlight
- itinerary: e-mail style summary of the visited places
"""

import logging
import re
from typing import Iterable

from .config import NarrationConfig
from .models import ExplorationMode, Place


logger = logging.getLogger(__name__)


DRIVING_GUIDANCE = (
    "The user is driving. Be EXTREMELY concise (one impactful sentence at most) "
    "for the curious fact."
)

STANDING_GUIDANCE = "The user is exploring on foot. You may go into more detail."

CONTEXT_PROMPT_TEMPLATE = """I am at latitude {latitude}, longitude {longitude} in {region}.
{guidance}

TASK:
1. Pick THE MOST INTERESTING AND UNUSUAL FACT about a historical site within 500m-1km of here.
2. Format the first line EXACTLY like this:
   "{prefix}: [short, curious fact here]"
{places_instruction}
Use the Google Maps tool."""

STANDING_PLACES_INSTRUCTION = "3. Then describe 3 nearby historical places in detail."

NARRATION_PROMPT_TEMPLATE = "Tell this briefly and with curiosity: {text}"

ITINERARY_PROMPT_TEMPLATE = """Write a short, inviting historical itinerary as e-mail text.

Places visited:
{places}

The e-mail must have:
Subject: {subject}
Body: a brief poetic introduction about {region}, then the list of places with one short sentence about each.
Close by inviting the reader on the next trip."""

ITINERARY_SUBJECT = "My Route Historian itinerary"


def extract_highlight(text: str, prefix: str = "HIGHLIGHT") -> tuple[str, str | None]:
    """
    Split a provider answer into narrative body and highlight.

    The highlight is the first non-blank line when it starts with
    ``<prefix>:`` (case-insensitive, optional markdown emphasis or quotes).
    That line is removed from the body; the line ends at a newline, a
    blank line, or the end of the text.

    Returns:
        (narrative_text, highlight or None)
    """
    pattern = re.compile(
        rf"\A\s*[*_\"']*{re.escape(prefix)}\s*:[*_]*[ \t]*(?P<fact>[^\n]*)(?:\n[ \t]*\n|\n|\Z)",
        re.IGNORECASE,
    )
    match = pattern.match(text)
    if not match:
        return text.strip(), None

    fact = match.group("fact").strip().strip("\"'*_").strip()
    if not fact:
        return text.strip(), None

    return text[match.end():].strip(), fact


class PromptBuilder:
    """
    Builds prompts for context lookups, narration and itineraries.

    Stateless apart from its config: callers pass the exploration mode
    with every context prompt.
    """

    def __init__(self, config: NarrationConfig | None = None):
        self.config = config or NarrationConfig()

    @property
    def highlight_prefix(self) -> str:
        return self.config.highlight_prefix

    def build_context_prompt(
        self,
        latitude: float,
        longitude: float,
        mode: ExplorationMode = ExplorationMode.STANDING,
    ) -> str:
        """Prompt for a context lookup around a position."""
        driving = mode == ExplorationMode.DRIVING
        return CONTEXT_PROMPT_TEMPLATE.format(
            latitude=latitude,
            longitude=longitude,
            region=self.config.region_hint,
            guidance=DRIVING_GUIDANCE if driving else STANDING_GUIDANCE,
            prefix=self.highlight_prefix,
            places_instruction="" if driving else STANDING_PLACES_INSTRUCTION,
        )

    def build_narration_prompt(self, text: str) -> str:
        return NARRATION_PROMPT_TEMPLATE.format(text=text)

    def build_itinerary_prompt(self, places: Iterable[Place]) -> str:
        """Prompt for an e-mail itinerary listing every place title."""
        places_list = "\n".join(f"- {place.title}" for place in places)
        return ITINERARY_PROMPT_TEMPLATE.format(
            places=places_list,
            subject=ITINERARY_SUBJECT,
            region=self.config.region_hint,
        )
