"""Chip-to-artwork link resolution."""

from dataclasses import dataclass
from typing import Optional

from .models import ScanState
from .registry import ChipRegistry


@dataclass(frozen=True)
class LinkResolution:
    state: ScanState
    linked_artwork_id: Optional[str]


def classify_link(linked_artwork_id: Optional[str], page_artwork_id: Optional[str]) -> LinkResolution:
    """
    Compare the chip's bound artwork with the artwork the caller is viewing.

    Only a present link that disagrees with a present page artwork is a
    mismatch. An unbound chip is authentic with no link.
    """
    if linked_artwork_id and page_artwork_id and linked_artwork_id != page_artwork_id:
        return LinkResolution(ScanState.MISMATCH, linked_artwork_id)
    return LinkResolution(ScanState.AUTHENTIC, linked_artwork_id or None)


class LinkResolver:
    def __init__(self, registry: ChipRegistry):
        self._registry = registry

    def resolve(self, chip_id: str, page_artwork_id: Optional[str]) -> LinkResolution:
        return classify_link(self._registry.get_artwork_link(chip_id), page_artwork_id)
