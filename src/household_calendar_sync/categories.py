"""
Maps external calendar names to local categories.
"""

import logging
import uuid

from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import Category

logger = logging.getLogger(__name__)

CATEGORY_PALETTE = (
    "#3b82f6",
    "#10b981",
    "#f59e0b",
    "#ef4444",
    "#8b5cf6",
    "#ec4899",
    "#14b8a6",
    "#f97316",
)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def suggest_calendar_color(name: str) -> str:
    """Deterministic palette colour for a calendar name.

    Uses the classic ``hash * 31 + char`` string hash with a 32-bit shift, so
    the same name always gets the same suggestion.
    """
    value = 0
    for char in name:
        shifted = _to_int32(_to_int32(value) << 5)
        value = ord(char) + (shifted - value)
    return CATEGORY_PALETTE[abs(value) % len(CATEGORY_PALETTE)]


class CategoryMapper:
    """
    Resolves or creates the category for a remote calendar.

    The fallback colour rotates through CATEGORY_PALETTE using a counter held
    by this instance, so each orchestrator run starts from ``start_index``.
    """

    def __init__(self, store: CalendarStore, start_index: int = 0):
        self.store = store
        self._color_index = start_index

    def next_color(self) -> str:
        color = CATEGORY_PALETTE[self._color_index % len(CATEGORY_PALETTE)]
        self._color_index += 1
        return color

    def find_or_create_category(
        self,
        household_id: str,
        owner_id: str,
        calendar_name: str,
        connection_id: str,
        calendar_color: str | None = None,
    ) -> str:
        existing = self.store.find_category(household_id, calendar_name)
        if existing is not None:
            if existing.caldav_connection_id is None:
                self.store.update_category(existing.id, caldav_connection_id=connection_id)
                logger.info(
                    f"Linked existing category '{calendar_name}' to connection {connection_id}"
                )
            return existing.id

        category = Category(
            id=str(uuid.uuid4()),
            household_id=household_id,
            owner_id=owner_id,
            name=calendar_name,
            color=calendar_color or self.next_color(),
            visibility="household",
            caldav_connection_id=connection_id,
            source="caldav",
        )
        self.store.insert_category(category)
        logger.info(f"Created category '{calendar_name}' ({category.color}) for {connection_id}")
        return category.id
