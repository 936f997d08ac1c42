"""
Reply Quality Gate

Decides whether a free-text check-in reply carries enough information to
close out the check-in, by delegating to an external ReplyClassifier.

When the classifier fails, the outcome depends on the thread:
- still pending -> sufficient (fail open, the reply is not lost)
- already settled -> not sufficient (fall back to asking again)
"""

import logging
from typing import Sequence

from .collaborators import ReplyClassifier
from .models import TrackedItem

logger = logging.getLogger("standup.quality_gate")


class ReplyQualityGate:

    def __init__(self, classifier: ReplyClassifier):
        self._classifier = classifier

    async def is_sufficient(
        self,
        text: str,
        subject_name: str,
        known_items: Sequence[TrackedItem],
        *,
        settled: bool,
    ) -> bool:
        try:
            return await self._classifier.is_sufficient(text, subject_name, known_items)
        except Exception as e:
            if settled:
                logger.error(f"QUALITY GATE: classifier failed on settled thread, asking again | subject={subject_name} | error={e}")
                return False
            logger.error(f"QUALITY GATE: classifier failed, treating reply as sufficient | subject={subject_name} | error={e}")
            return True
