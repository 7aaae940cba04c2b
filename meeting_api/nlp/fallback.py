"""Deterministic stand-ins used when no AI provider answers."""

from __future__ import annotations

import re
from typing import List

from loguru import logger

from ..schemas.meeting import ActionItem

ACTION_PHRASES = (
    "will",
    "need to",
    "should",
    "must",
    "have to",
    "going to",
    "action item",
    "next step",
    "follow up",
    "todo",
    "task",
)
MAX_HEURISTIC_ITEMS = 5

_SENTENCE_SPLIT = re.compile(r"[.!?]+")

PLACEHOLDER_SUMMARY = (
    "This meeting focused on reviewing the current sprint progress and addressing key development tasks. "
    "The authentication module has been completed and is ready for testing, while the frontend UI components "
    "are 80% complete with an expected completion by tomorrow. The team discussed technical decisions regarding "
    "caching strategy, agreeing to use Redis for better scalability. A demo is scheduled for Friday, with a "
    "sync-up meeting planned for Thursday to ensure everyone is on track. The main blockers identified were "
    "around the caching implementation, which has now been resolved with the Redis decision."
)

_PLACEHOLDER_ACTION_ITEMS = (
    ("1", "Implement Redis caching for user sessions", "Speaker 2", "high"),
    ("2", "Complete frontend UI components and dashboard layout", "Speaker 3", "high"),
    ("3", "Connect frontend to backend API", "Speaker 3", "medium"),
    ("4", "Prepare deployment pipeline", "Speaker 1", "medium"),
    ("5", "Prepare demo for Friday presentation", "Team", "high"),
)

MOCK_TRANSCRIPT = """
Speaker 1: Good morning everyone. Let's start today's meeting by reviewing our progress on the current sprint.

Speaker 2: Sure. I've completed the authentication module and it's ready for testing. The API endpoints are all working as expected.

Speaker 1: Excellent! That's great progress. What about the frontend integration?

Speaker 3: I'm about 80% done with the UI components. I should have everything ready by tomorrow. I just need to finish the dashboard layout and connect it to the backend.

Speaker 1: Perfect. Are there any blockers we need to address?

Speaker 2: Actually, yes. We need to decide on the caching strategy for the user sessions. Should we use Redis or stick with in-memory caching?

Speaker 1: Let's go with Redis since we're already using it for the job queue. It'll give us better scalability.

Speaker 3: Agreed. I'll update the implementation accordingly.

Speaker 1: Great. So for action items: Speaker 2 will implement Redis caching for sessions, Speaker 3 will complete the frontend by tomorrow, and I'll start preparing the deployment pipeline.

Speaker 2: Sounds good. When do we want to have the first demo ready?

Speaker 1: Let's aim for Friday. That gives us three days to finish everything and do some testing.

Speaker 3: Works for me.

Speaker 1: Alright, let's sync up again on Thursday to make sure we're on track. Thanks everyone!
""".strip()


def placeholder_action_items() -> List[ActionItem]:
    return [
        ActionItem(id=item_id, text=text, assignee=assignee, priority=priority)
        for item_id, text, assignee, priority in _PLACEHOLDER_ACTION_ITEMS
    ]


def heuristic_action_items(transcript: str, limit: int = MAX_HEURISTIC_ITEMS) -> List[ActionItem]:
    """Keyword scan over sentence-split text.

    Ids are the 1-based sentence index, so they stay stable for the same
    transcript even after the list is capped.
    """
    found: List[ActionItem] = []
    for index, sentence in enumerate(_SENTENCE_SPLIT.split(transcript or "")):
        lowered = sentence.lower()
        if not any(phrase in lowered for phrase in ACTION_PHRASES):
            continue
        text = sentence.strip()
        if not text:
            continue
        found.append(ActionItem(id=str(index + 1), text=text, assignee=None, priority="medium"))
        if len(found) >= limit:
            break
    return found


def fallback_action_items(transcript: str) -> List[ActionItem]:
    items = heuristic_action_items(transcript)
    if items:
        logger.bind(tag="ai.fallback").info(f"extracted {len(items)} potential action items from transcript")
        return items
    logger.bind(tag="ai.fallback").info("no action phrases found; using placeholder action items")
    return placeholder_action_items()
