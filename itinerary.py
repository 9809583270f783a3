"""
itinerary.py — Locate one item inside a day-indexed itinerary and edit it in place.

An itinerary is a list of day dicts as produced by the generator:

    {
      "day": 1, "date": "2025-05-01",
      "activities":    [{"title": ..., "description": ...}, ...],
      "meals":         [{"type": "Lunch", "venue": ..., "title": ..., ...}, ...],
      "accommodation": {"name": ..., "description": ...}
    }

Items have no stable primary key across edit round-trips, so identity is
rebuilt per request from a human-readable field:

    activity       title
    meal           venue, then title, then type  (one full pass per field)
    accommodation  name  (a day holds at most one)

Two items with the same title are indistinguishable; the first one wins.
When the caller has a stable `id` for the item, pass it as item_id and it is
tried before the title heuristic.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from errors import DayNotFound, ItemNotFound, UnsupportedItemType

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    ACTIVITY      = 'activity'
    MEAL          = 'meal'
    ACCOMMODATION = 'accommodation'


@dataclass
class Match:
    kind:       ItemKind
    index:      int | None      # slot in the day's collection; None for accommodation
    item:       dict
    matched_on: str             # which field matched ('id', 'title', 'venue', ...)


@dataclass
class EditResult:
    edited_item: dict
    updated_day: dict
    kind:        ItemKind
    index:       int | None

    def to_dict(self) -> dict:
        return {'editedItem': self.edited_item, 'updatedDay': self.updated_day}


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

class CollectionVariant:
    """Items kept in a list on the day (activities, meals)."""

    def __init__(self, kind: ItemKind, key: str, identity_fields: tuple[str, ...]):
        self.kind = kind
        self.key = key
        self.identity_fields = identity_fields

    def items(self, day: dict) -> list:
        items = day.get(self.key)
        return items if isinstance(items, list) else []

    def label(self, item: dict):
        for name in self.identity_fields:
            if item.get(name):
                return item[name]
        return None

    def find(self, day: dict, identity: str, item_id=None) -> Match | None:
        entries = [(i, it) for i, it in enumerate(self.items(day)) if isinstance(it, dict)]
        if item_id is not None:
            for i, it in entries:
                if it.get('id') == item_id:
                    return Match(self.kind, i, it, 'id')
        # One pass per field, in precedence order, across every item
        for name in self.identity_fields:
            for i, it in entries:
                if it.get(name) == identity:
                    return Match(self.kind, i, it, name)
        return None

    def available(self, day: dict) -> list:
        return [self.label(it) for it in self.items(day) if isinstance(it, dict)]

    def write_back(self, day: dict, match: Match, edited: dict) -> None:
        day[self.key][match.index] = edited


class AccommodationVariant:
    """The day's single accommodation."""

    kind = ItemKind.ACCOMMODATION
    key = 'accommodation'

    def label(self, item: dict):
        return item.get('name')

    def find(self, day: dict, identity: str, item_id=None) -> Match | None:
        acc = day.get(self.key)
        if not isinstance(acc, dict):
            return None
        if item_id is not None and acc.get('id') == item_id:
            return Match(self.kind, None, acc, 'id')
        if acc.get('name') == identity:
            return Match(self.kind, None, acc, 'name')
        return None

    def available(self, day: dict) -> list:
        acc = day.get(self.key)
        return [acc.get('name')] if isinstance(acc, dict) else []

    def write_back(self, day: dict, match: Match, edited: dict) -> None:
        day[self.key] = edited


VARIANTS = {
    ItemKind.ACTIVITY:      CollectionVariant(ItemKind.ACTIVITY, 'activities', ('title',)),
    ItemKind.MEAL:          CollectionVariant(ItemKind.MEAL, 'meals', ('venue', 'title', 'type')),
    ItemKind.ACCOMMODATION: AccommodationVariant(),
}


def item_kind(item_type) -> ItemKind:
    try:
        return ItemKind(item_type)
    except ValueError:
        raise UnsupportedItemType(
            f'Unsupported item type {item_type!r}',
            supported=[k.value for k in ItemKind],
        ) from None


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def get_day(days: list, day_index) -> dict:
    if (isinstance(day_index, bool) or not isinstance(day_index, int)
            or not 0 <= day_index < len(days) or not isinstance(days[day_index], dict)):
        raise DayNotFound(f'Day {day_index} not found in provided days array')
    return days[day_index]


def resolve_item(days: list, day_index, item_type, identity: str, item_id=None) -> Match:
    """Find the item or raise ItemNotFound listing what the day does contain."""
    day = get_day(days, day_index)
    kind = item_kind(item_type)
    variant = VARIANTS[kind]

    match = variant.find(day, identity, item_id)
    if match is None:
        raise ItemNotFound(
            f'Item of type {kind.value} with title "{identity}" not found in day {day_index}',
            day_structure=list(day.keys()),
            available_items=variant.available(day),
        )
    logger.debug('Resolved %s %r on day %d via %s (index %s)',
                 kind.value, identity, day_index, match.matched_on, match.index)
    return match


# ---------------------------------------------------------------------------
# Edit
# ---------------------------------------------------------------------------

def apply_feedback(item: dict, feedback: str) -> dict:
    """Shallow copy of `item` with the feedback folded into its description."""
    edited = dict(item)
    if edited.get('description'):
        edited['description'] = f"{edited['description']}\n\nUpdated based on feedback: {feedback}"
    else:
        edited['description'] = f'New description based on feedback: {feedback}'
    return edited


def edit_item(days: list, day_index, item_type, identity: str, feedback: str,
              *, item_id=None) -> EditResult:
    """
    Locate the item, write an edited copy into the same slot and return it
    together with the (mutated) day. Persisting the itinerary is the
    caller's job.
    """
    match = resolve_item(days, day_index, item_type, identity, item_id)
    day = days[day_index]
    edited = apply_feedback(match.item, feedback)
    VARIANTS[match.kind].write_back(day, match, edited)

    logger.info('Edited %s %r on day %d%s', match.kind.value, identity, day_index,
                f' at index {match.index}' if match.index is not None else '')
    return EditResult(edited, day, match.kind, match.index)


# ---------------------------------------------------------------------------
# Whole-trip helpers (stored trips)
# ---------------------------------------------------------------------------

def find_accommodation_day(days: list, name: str) -> int | None:
    """Index of the first day whose accommodation is called `name`."""
    for i, day in enumerate(days):
        acc = day.get('accommodation') if isinstance(day, dict) else None
        if isinstance(acc, dict) and acc.get('name') == name:
            return i
    return None


def propagate_accommodation(days: list, source_index: int, old_name: str, edited: dict) -> list[int]:
    """
    Copy an edited accommodation onto every other day that shared its old
    name. Returns the indexes of the days that were updated.
    """
    updated = []
    for i, day in enumerate(days):
        if i == source_index or not isinstance(day, dict):
            continue
        acc = day.get('accommodation')
        if isinstance(acc, dict) and acc.get('name') == old_name:
            day['accommodation'] = dict(edited)
            updated.append(i)
    if updated:
        logger.info('Accommodation %r also updated on day(s) %s', old_name, updated)
    return updated


def list_items(days: list) -> list[dict]:
    """Per-day identities of every item, for diagnosing failed lookups."""
    listing = []
    for i, day in enumerate(days):
        if not isinstance(day, dict):
            continue
        listing.append({
            'day_index':     i,
            'day':           day.get('day', i + 1),
            'date':          day.get('date'),
            'activities':    VARIANTS[ItemKind.ACTIVITY].available(day),
            'meals':         VARIANTS[ItemKind.MEAL].available(day),
            'accommodation': VARIANTS[ItemKind.ACCOMMODATION].available(day),
        })
    return listing
