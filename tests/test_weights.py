"""Tests for event weight resolution and category boosts."""

from datetime import datetime, timedelta

import pytest

from demand_engine.aggregate.boosts import BoostEntry, match_boost, validate_multiplier
from demand_engine.aggregate.events import EventType, ProductText, VoterContext
from demand_engine.aggregate.weights import resolve_weight
from demand_engine.errors import InvalidEventType

NOW = datetime(2024, 3, 1, 12, 0, 0)
MEMBER = VoterContext(voter_key="member-1", is_member=True)
GUEST = VoterContext(voter_key="guest-1")


def _boost(label="baby food", keywords=(), multiplier=2.0, **kwargs) -> BoostEntry:
    return BoostEntry(
        id=None, category_label=label, keywords=tuple(keywords), multiplier=multiplier, **kwargs
    )


class TestBaseWeights:
    def test_unboosted_weights(self):
        product = ProductText(product_name="Sparkling water")
        assert resolve_weight("search", GUEST, product, [], NOW).weight == 1
        assert resolve_weight("scan", GUEST, product, [], NOW).weight == 5
        assert resolve_weight("member_scan", MEMBER, product, [], NOW).weight == 20

    def test_member_scan_from_non_member_counts_as_scan(self):
        resolved = resolve_weight("member_scan", GUEST, ProductText(), [], NOW)
        assert resolved.event_type is EventType.SCAN
        assert resolved.weight == 5

    def test_unknown_event_type_rejected(self):
        with pytest.raises(InvalidEventType):
            resolve_weight("like", GUEST, ProductText(), [], NOW)

    def test_photo_bonus_is_flat_and_never_boosted(self):
        boost = _boost(label="snacks", multiplier=10)
        resolved = resolve_weight(
            "photo_contribution", GUEST, ProductText(category="Snacks"), [boost], NOW
        )
        assert resolved.weight == 10
        assert resolved.multiplier == 1.0


class TestBoostMatching:
    def test_keyword_matches_product_name(self):
        boost = _boost(label="infant", keywords=["formula"], multiplier=3)
        product = ProductText(product_name="Organic Infant Formula Stage 1")
        resolved = resolve_weight("scan", GUEST, product, [boost], NOW)
        assert resolved.weight == 15
        assert resolved.boost == boost

    def test_category_label_match_is_case_insensitive(self):
        boost = _boost(label="Baby Food", multiplier=4)
        product = ProductText(category="baby food")
        assert resolve_weight("member_scan", MEMBER, product, [boost], NOW).weight == 80

    def test_highest_multiplier_wins(self):
        low = _boost(label="snacks", multiplier=2)
        high = _boost(label="other", keywords=["chips"], multiplier=5)
        product = ProductText(product_name="Potato chips", category="Snacks")
        assert match_boost([low, high], product, NOW) == high

    def test_inactive_or_expired_boosts_ignored(self):
        product = ProductText(category="snacks")
        inactive = _boost(label="snacks", is_active=False)
        expired = _boost(label="snacks", ends_at=NOW - timedelta(days=1))
        upcoming = _boost(label="snacks", starts_at=NOW + timedelta(hours=1))
        assert match_boost([inactive, expired, upcoming], product, NOW) is None
        assert resolve_weight("scan", GUEST, product, [inactive, expired], NOW).weight == 5

    def test_open_ended_window_is_live(self):
        boost = _boost(label="snacks", starts_at=NOW - timedelta(days=30))
        assert boost.is_live(NOW)

    def test_no_product_text_matches_nothing(self):
        boost = _boost(label="snacks", keywords=["chips"])
        assert match_boost([boost], ProductText(), NOW) is None

    @pytest.mark.parametrize("multiplier", [0.5, 10.5])
    def test_multiplier_range_enforced(self, multiplier):
        with pytest.raises(ValueError):
            validate_multiplier(multiplier)
