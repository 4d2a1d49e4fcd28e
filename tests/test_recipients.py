"""
test_recipients.py — Targeting parsing and recipient resolution.

Run with:
    pytest tests/test_recipients.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.models import Targeting, UserRole
from backend.app.alerts.recipients import RecipientResolver, parse_targeting
from backend.app.core.errors import ValidationError
from tests.support import make_user, seeded_storage


async def _resolver_for_overlap() -> RecipientResolver:
    """Admins 1, 2; operators 5, 7; subscriber 9."""
    storage = await seeded_storage([
        make_user(1, UserRole.ADMIN),
        make_user(2, UserRole.ADMIN),
        make_user(5, UserRole.OPERATOR),
        make_user(7, UserRole.OPERATOR),
        make_user(9, UserRole.SUBSCRIBER),
    ])
    return RecipientResolver(storage)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Targeting parsing
# ═══════════════════════════════════════════════════════════════════════════

class TestParseTargeting:
    """Test parse_targeting."""

    def test_specific_and_user_ids_are_synonyms(self):
        t = parse_targeting({"specific": [1, 2], "userIds": [2, 3]})
        assert t.user_ids == [1, 2, 3]

    def test_roles_parsed_and_deduplicated(self):
        t = parse_targeting({"roles": ["operator", "admin", "operator"]})
        assert t.roles == [UserRole.OPERATOR, UserRole.ADMIN]

    def test_none_is_empty(self):
        assert parse_targeting(None).is_empty

    def test_targeting_passes_through(self):
        t = Targeting(all=True)
        assert parse_targeting(t) is t

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_targeting({"roles": ["mayor"]})
        assert "targeting" in exc.value.errors

    def test_non_integer_id_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting({"specific": ["five"]})

    def test_boolean_id_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting({"specific": [True]})

    def test_fractional_id_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting({"specific": [3.9]})

    def test_numeric_string_id_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting({"userIds": ["3"]})

    def test_string_all_flag_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_targeting({"all": "false"})
        assert "targeting" in exc.value.errors

    def test_numeric_all_flag_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting({"all": 1})

    def test_null_all_flag_is_false(self):
        t = parse_targeting({"all": None, "roles": ["admin"]})
        assert t.all is False

    def test_non_mapping_rejected(self):
        with pytest.raises(ValidationError):
            parse_targeting(["admin"])


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Resolution
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipientResolver:
    """Test RecipientResolver.resolve."""

    async def test_role_and_id_overlap_counts_user_once(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"roles": ["admin", "operator"], "specific": [5]})
        ids = [r.id for r in recipients]
        assert sorted(ids) == [1, 2, 5, 7]
        assert ids.count(5) == 1

    async def test_no_duplicate_ids_for_any_overlap(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({
            "all": True,
            "roles": ["admin", "operator", "subscriber"],
            "specific": [1, 5, 9],
            "userIds": [9],
        })
        ids = [r.id for r in recipients]
        assert len(ids) == len(set(ids)) == 5

    async def test_specific_id_outside_roles_included(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"roles": ["admin"], "specific": [9]})
        assert [r.id for r in recipients] == [1, 2, 9]

    async def test_unknown_ids_skipped(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"specific": [9, 404]})
        assert [r.id for r in recipients] == [9]

    async def test_all_returns_every_user(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"all": True})
        assert len(recipients) == 5

    async def test_empty_targeting_resolves_nobody(self):
        resolver = await _resolver_for_overlap()
        assert await resolver.resolve({}) == []

    async def test_first_seen_order(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"roles": ["operator", "admin"]})
        assert [r.id for r in recipients] == [5, 7, 1, 2]

    async def test_recipients_carry_no_credentials(self):
        resolver = await _resolver_for_overlap()
        recipients = await resolver.resolve({"specific": [1]})
        recipient = recipients[0]
        assert not hasattr(recipient, "password_hash")
        assert "password_hash" not in recipient.to_dict()
        assert recipient.email == "user1@example.com"
