"""
Tests for iskomarket.models module.
"""
import pytest
from datetime import datetime, timezone

from iskomarket.exceptions import ValidationError
from iskomarket.models import (
    PLACEHOLDER_IMAGE,
    ChangeKind,
    Listing,
    ListingChange,
    ListingFilter,
    SellerSummary,
    VisibilityAdvisory,
    VisibilityCounts,
    is_campus_category,
    is_publicly_visible,
    newest_first,
    normalize_images,
    parse_timestamp,
)


class TestNormalizeImages:
    """Tests for image URI sanitizing."""

    def test_keeps_remote_urls(self):
        assert normalize_images(["https://a/1.jpg", " https://a/2.jpg "]) == (
            "https://a/1.jpg",
            "https://a/2.jpg",
        )

    @pytest.mark.parametrize("uri", [
        "blob:http://localhost/123",
        "file:///tmp/photo.jpg",
        "filesystem:http://localhost/temporary/x.png",
    ])
    def test_ephemeral_uris_become_placeholder(self, uri):
        assert normalize_images([uri, "https://a/1.jpg"]) == (PLACEHOLDER_IMAGE, "https://a/1.jpg")

    def test_empty_or_missing_yields_placeholder(self):
        assert normalize_images(None) == (PLACEHOLDER_IMAGE,)
        assert normalize_images([]) == (PLACEHOLDER_IMAGE,)

    def test_non_string_entries_become_placeholder(self):
        assert normalize_images([None, 5, ""]) == (PLACEHOLDER_IMAGE,) * 3

    def test_single_string_is_wrapped(self):
        assert normalize_images("https://a/1.jpg") == ("https://a/1.jpg",)


class TestVisibilityRule:
    """Visible iff not deleted, not hidden, and available or availability unset."""

    def test_null_availability_is_visible(self):
        row = {"id": "p1", "is_deleted": False, "is_hidden": False, "is_available": None}
        assert is_publicly_visible(row) is True
        assert Listing.from_row(row).is_publicly_visible is True

    def test_missing_flags_are_visible(self):
        assert is_publicly_visible({"id": "p1"}) is True

    @pytest.mark.parametrize("flags", [
        {"is_deleted": True},
        {"is_hidden": True},
        {"is_available": False},
        {"is_deleted": True, "is_hidden": False, "is_available": True},
        {"is_hidden": True, "is_available": None},
    ])
    def test_not_visible(self, flags):
        row = {"id": "p1", **flags}
        assert is_publicly_visible(row) is False
        assert Listing.from_row(row).is_publicly_visible is False


class TestMarketplaceRule:
    """Marketplace rows are visible, unsold, and outside the campus board."""

    def test_plain_listing_is_on_marketplace(self, sample_row):
        assert Listing.from_row(sample_row).is_marketplace_listing is True

    @pytest.mark.parametrize("overrides", [
        {"is_sold": True},
        {"is_cvsu_only": True},
        {"category": {"id": 9, "name": "CvSU Merch"}},
        {"category": " cvsu uniforms"},
        {"is_hidden": True},
    ])
    def test_excluded(self, sample_row, overrides):
        assert Listing.from_row({**sample_row, **overrides}).is_marketplace_listing is False

    @pytest.mark.parametrize("name,expected", [
        ("CvSU Merch", True),
        ("cvsu", True),
        ("Books", False),
        ("", False),
        (None, False),
        (3, False),
    ])
    def test_is_campus_category(self, name, expected):
        assert is_campus_category(name) is expected

    def test_newest_first_puts_undated_rows_last(self, listing_factory):
        rows = [
            listing_factory("undated", created_at=None),
            listing_factory("old", created_at="2026-01-01T00:00:00Z"),
            listing_factory("new", created_at="2026-09-01T00:00:00Z"),
        ]
        assert [listing.id for listing in newest_first(rows)] == ["new", "old", "undated"]


class TestListing:
    """Tests for Listing.from_row parsing."""

    def test_joined_row(self, sample_row):
        listing = Listing.from_row(sample_row)

        assert listing.id == "p1"
        assert listing.price == 250.0
        assert listing.category == "Books"
        assert listing.seller == SellerSummary(
            id="seller-p1",
            username="juan",
            avatar_url=None,
            credit_score=85,
            is_trusted_member=True,
        )
        assert listing.is_enriched is True
        assert listing.created_at == datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)

    def test_legacy_row(self, legacy_row):
        listing = Listing.from_row(legacy_row)

        assert listing.id == "42"
        assert listing.seller_id == "7"
        assert listing.price == 150.0
        assert listing.images == (PLACEHOLDER_IMAGE,)
        assert listing.is_available is None
        assert listing.is_hidden is False
        assert listing.is_enriched is False

    def test_equality_ignores_raw(self, sample_row):
        a = Listing.from_row(sample_row)
        b = Listing.from_row({**sample_row, "extra_column": 1})
        assert a == b

    def test_to_dict_serializes_timestamps(self, sample_row):
        data = Listing.from_row(sample_row).to_dict()
        assert data["created_at"] == "2026-10-01T08:00:00+00:00"
        assert data["seller"]["username"] == "juan"
        assert data["images"] == ["https://cdn.example.com/img.jpg"]

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None


class TestListingChange:
    """Tests for realtime payload parsing."""

    def test_insert_payload(self):
        change = ListingChange.from_payload({
            "type": "INSERT",
            "record": {"id": "p9", "is_hidden": False},
            "old_record": None,
        })
        assert change.kind == ChangeKind.INSERT
        assert change.listing_id == "p9"
        assert change.old_record == {}

    def test_delete_payload_uses_old_record(self):
        change = ListingChange.from_payload({"type": "DELETE", "old_record": {"id": 7}})
        assert change.kind == ChangeKind.DELETE
        assert change.listing_id == "7"

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            ListingChange.from_payload({"type": "TRUNCATE"})


class TestVisibilityCounts:
    """Tests for the diagnostic snapshot."""

    def test_discrepancy_when_primary_short(self):
        assert VisibilityCounts(primary=3, broad=5, raw=9).discrepancy is True

    def test_raw_alone_is_not_a_discrepancy(self):
        assert VisibilityCounts(primary=5, broad=5, raw=9).discrepancy is False

    def test_failed_probe_is_not_a_discrepancy(self):
        assert VisibilityCounts(primary=None, broad=5, raw=9).discrepancy is False

    def test_to_dict(self):
        data = VisibilityCounts(primary=1, broad=2, raw=3).to_dict()
        assert data["discrepancy"] is True
        assert "captured_at" in data


class TestListingFilter:
    """Tests for filter validation and client-side matching."""

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError, match="min_price"):
            ListingFilter(min_price=-1)

    def test_inverted_range_rejected(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            ListingFilter(min_price=10, max_price=5)

    def test_matches(self, listing_factory):
        listing = listing_factory("p1", title="Physics Textbook", price=300.0)

        assert ListingFilter().matches(listing)
        assert ListingFilter(search="textbook").matches(listing)
        assert ListingFilter(category_id="3", max_price=300).matches(listing)
        assert not ListingFilter(search="lamp").matches(listing)
        assert not ListingFilter(min_price=301).matches(listing)
        assert not ListingFilter(category_id="4").matches(listing)


def test_default_advisory_inactive():
    assert VisibilityAdvisory().to_dict() == {"active": False, "note": None}
