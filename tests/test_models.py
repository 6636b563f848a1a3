from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from share_credits.models.credits import CreditType
from share_credits.models.subscription import SubscriptionTier
from share_credits.models.tier import TIER_CATALOG, get_tier_limits
from share_credits.timeutils import add_calendar_months, period_key


def test_tier_catalog_values():
    free = get_tier_limits(SubscriptionTier.FREE)
    premium = get_tier_limits(SubscriptionTier.PREMIUM)

    assert (free.exams_per_month, free.practices_per_month) == (2, 3)
    assert free.share_allotment(CreditType.EXAM) == 2
    assert free.share_allotment(CreditType.PRACTICE) == 3
    assert free.library_access_count == 1
    assert premium.creation_limit(CreditType.EXAM) == 10
    assert premium.creation_limit(CreditType.PRACTICE) == 15
    assert premium.library_access_count is None


def test_tier_catalog_is_read_only():
    with pytest.raises(ValidationError):
        TIER_CATALOG[SubscriptionTier.FREE].exams_per_month = 99
    with pytest.raises(TypeError):
        TIER_CATALOG[SubscriptionTier.FREE] = TIER_CATALOG[SubscriptionTier.PREMIUM]


def test_period_key_uses_utc():
    local = datetime(2026, 4, 1, 1, 0, tzinfo=timezone(timedelta(hours=3)))
    assert period_key(local) == "2026-03"


def test_add_calendar_months_clamps_day():
    start = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)

    assert add_calendar_months(start, 1) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert add_calendar_months(start, 12) == datetime(2027, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert add_calendar_months(datetime(2026, 12, 15, tzinfo=timezone.utc), 1).year == 2027
