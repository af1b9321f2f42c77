# src/prospect_pipeline/tests/test_filters.py
"""
Unit tests for the client-side filter registry.

Tests cover:
- Registry contents and decorator registration
- Individual filter predicates
- Combining filters and ignoring unknown names
- Filter-then-truncate finalization
"""
import pytest

from prospect_pipeline.filters import (
    FILTERS,
    apply_filters,
    available_filters,
    finalize_leads,
    get_filter,
    register_filter,
)
from prospect_pipeline.models import Enrichment, Lead


class TestFiltersRegistry:
    """Tests for the filters registry."""

    @pytest.mark.unit
    def test_builtin_filters_registered(self):
        assert available_filters() == [
            "has_email",
            "has_phone",
            "has_website",
            "min_rating_4",
            "no_website",
        ]

    @pytest.mark.unit
    def test_register_filter_decorator(self):
        @register_filter("named_acme")
        def named_acme(lead: Lead) -> bool:
            return lead.name == "Acme"

        try:
            assert get_filter("named_acme") is named_acme
        finally:
            FILTERS.pop("named_acme", None)

    @pytest.mark.unit
    def test_get_unknown_filter(self):
        assert get_filter("does_not_exist") is None


class TestFilterPredicates:
    """Tests for individual predicates."""

    @pytest.mark.unit
    def test_has_phone_counts_enrichment(self):
        lead = Lead(name="A", enrichment=Enrichment(phones=["555-0100"]))

        assert get_filter("has_phone")(lead) is True
        assert get_filter("has_phone")(Lead(name="B")) is False

    @pytest.mark.unit
    def test_website_filters(self):
        with_site = Lead(name="A", website="https://a.com")
        without_site = Lead(name="B")

        assert get_filter("has_website")(with_site) is True
        assert get_filter("no_website")(with_site) is False
        assert get_filter("no_website")(without_site) is True

    @pytest.mark.unit
    @pytest.mark.parametrize("rating,expected", [
        (4.0, True),
        (4.8, True),
        (3.9, False),
        (None, False),
    ])
    def test_min_rating_4(self, rating, expected):
        assert get_filter("min_rating_4")(Lead(name="A", rating=rating)) is expected


class TestApplyFilters:
    """Tests for apply_filters() and finalize_leads()."""

    @pytest.mark.unit
    def test_all_filters_must_pass(self):
        leads = [
            Lead(name="A", phone="1", website="https://a.com"),
            Lead(name="B", phone="2"),
            Lead(name="C", website="https://c.com"),
        ]

        result = apply_filters(leads, {"has_phone", "has_website"})

        assert [lead.name for lead in result] == ["A"]

    @pytest.mark.unit
    def test_unknown_filter_ignored(self):
        leads = [Lead(name="A"), Lead(name="B")]

        assert apply_filters(leads, {"bogus"}) == leads

    @pytest.mark.unit
    def test_filter_then_truncate(self):
        """Test truncation counts only leads that passed the filters."""
        leads = [
            Lead(name="A"),
            Lead(name="B", phone="1"),
            Lead(name="C"),
            Lead(name="D", phone="2"),
            Lead(name="E", phone="3"),
        ]

        result = finalize_leads(leads, {"has_phone"}, limit=2)

        assert [lead.name for lead in result] == ["B", "D"]
