"""Map detected entities onto page rectangles."""

import logging
from typing import Dict, List, Tuple

from .models import DetectedEntity, PositionIndex, RedactionBox

logger = logging.getLogger(__name__)

# Outward widening so a box strictly contains the region it was built from
EPSILON = 0.01


class RedactionBoxResolver:
    """Turns entity character ranges into one RedactionBox per page."""

    def resolve(self, entity: DetectedEntity, positions: PositionIndex) -> List[RedactionBox]:
        """
        Compute the boxes covering an entity.

        When the entity covers only part of a fragment, the fragment
        rectangle is cut proportionally using a per-character width of
        ``fragment.width / len(fragment.text)``.

        Returns:
            One box per page, or [] when no fragment overlaps the entity
        """
        if not entity.located:
            return []

        per_page: Dict[int, RedactionBox] = {}
        for fragment in positions.fragments_between(entity.char_start, entity.char_end):
            if fragment.page is None or not fragment.text:
                continue

            char_width = fragment.width / len(fragment.text)
            local_start = max(entity.char_start, fragment.char_offset) - fragment.char_offset
            local_end = min(entity.char_end, fragment.char_end) - fragment.char_offset

            box = RedactionBox(
                page=fragment.page,
                x1=fragment.x + local_start * char_width,
                y1=fragment.y,
                x2=fragment.x + local_end * char_width,
                y2=fragment.y + fragment.height,
            )
            existing = per_page.get(fragment.page)
            per_page[fragment.page] = existing.union(box) if existing else box

        return [per_page[page].padded(EPSILON) for page in sorted(per_page)]

    def resolve_all(
        self, entities: List[DetectedEntity], positions: PositionIndex
    ) -> Tuple[Dict[int, List[RedactionBox]], List[DetectedEntity]]:
        """
        Resolve every entity, attaching geometry and page to each.

        Returns:
            (page -> boxes, entities whose position could not be found)
        """
        boxes_by_page: Dict[int, List[RedactionBox]] = {}
        unconfirmed = []

        for entity in entities:
            boxes = self.resolve(entity, positions)
            if not boxes:
                entity.geometry = None
                unconfirmed.append(entity)
                continue
            entity.geometry = boxes
            entity.page = boxes[0].page
            for box in boxes:
                boxes_by_page.setdefault(box.page, []).append(box)

        if unconfirmed:
            logger.warning(f"{len(unconfirmed)} entities could not be positioned on a page")
        return boxes_by_page, unconfirmed
