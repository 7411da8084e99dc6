"""Tests for the donation lifecycle."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError


@pytest.fixture
def donor(make_user):
    return make_user("Star Kabab", user_type="restaurant")


@pytest.fixture
def ngo(make_user):
    return make_user("Feed Dhaka", user_type="ngo")


def claim(services, donation, ngo):
    return services.donations.claim(str(donation["_id"]), str(ngo["_id"]), ngo["name"])


class TestCreate:
    def test_create_snapshots_donor(self, services, donor, donation_attrs):
        donation = services.donations.create(donor, donation_attrs(category="  Food "))
        assert donation["status"] == "available"
        assert donation["category"] == "food"
        assert donation["donor_id"] == str(donor["_id"])
        assert donation["donor_name"] == "Star Kabab"
        assert donation["donor_type"] == "restaurant"
        assert donation["likes"] == 0
        assert donation["liked_by"] == []
        assert donation["feedback"] is None

    def test_ngo_can_donate(self, services, ngo, donation_attrs):
        donation = services.donations.create(ngo, donation_attrs())
        assert donation["donor_type"] == "ngo"

    def test_admin_cannot_donate(self, services, make_user, donation_attrs):
        admin = make_user("Admin", user_type="admin")
        with pytest.raises(ForbiddenError):
            services.donations.create(admin, donation_attrs())

    def test_past_expiry_rejected(self, services, donor, donation_attrs, clock):
        with pytest.raises(ValidationError):
            services.donations.create(donor, donation_attrs(expiry_date=clock.now - timedelta(minutes=1)))

    def test_missing_title_rejected(self, services, donor, donation_attrs):
        attrs = donation_attrs()
        del attrs["title"]
        with pytest.raises(ValidationError):
            services.donations.create(donor, attrs)

    def test_unknown_category_rejected(self, services, donor, donation_attrs):
        with pytest.raises(ValidationError):
            services.donations.create(donor, donation_attrs(category="furniture"))

    def test_aware_expiry_stored_as_utc(self, services, donor, donation_attrs):
        aware = datetime(2025, 1, 2, 18, 0, tzinfo=timezone(timedelta(hours=6)))
        donation = services.donations.create(donor, donation_attrs(expiry_date=aware))
        assert donation["expiry_date"] == datetime(2025, 1, 2, 12, 0)

    def test_no_expiry_allowed(self, services, donor, donation_attrs):
        donation = services.donations.create(donor, donation_attrs(expiry_date=None))
        assert donation["expiry_date"] is None


class TestClaim:
    def test_claim_success(self, services, database, donor, ngo, make_donation, clock):
        donation = make_donation(donor)
        claimed = claim(services, donation, ngo)

        assert claimed["status"] == "claimed"
        assert claimed["claimer_id"] == str(ngo["_id"])
        assert claimed["claimer_name"] == "Feed Dhaka"
        assert claimed["claimed_at"] == clock.now

        notifications = database.get_documents("notification", {"user_id": str(donor["_id"])})
        assert len(notifications) == 1
        assert notifications[0]["type"] == "donation_claimed"
        assert "Feed Dhaka" in notifications[0]["message"]
        assert database.find_by_id("user", donor["_id"])["donations_count"] == 1

    def test_second_claim_conflicts(self, services, database, donor, ngo, make_user, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        other = make_user("Second NGO", user_type="ngo")

        with pytest.raises(ConflictError):
            claim(services, donation, other)

        stored = database.find_by_id("donation", donation["_id"])
        assert stored["claimer_id"] == str(ngo["_id"])
        assert database.find_by_id("user", donor["_id"])["donations_count"] == 1
        assert database.count("notification", {"type": "donation_claimed"}) == 1

    def test_cannot_claim_own_donation(self, services, ngo, make_donation):
        donation = make_donation(ngo)
        with pytest.raises(ForbiddenError):
            claim(services, donation, ngo)

    def test_claim_after_expiry(self, services, database, donor, ngo, make_donation, clock):
        donation = make_donation(donor, expiry_date=clock.now + timedelta(hours=1))
        clock.advance(hours=2)

        with pytest.raises(ConflictError, match="expired"):
            claim(services, donation, ngo)
        assert database.find_by_id("donation", donation["_id"])["status"] == "expired"

    def test_notification_failure_does_not_fail_claim(self, services, database, donor, ngo, make_donation, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("notification store down")

        monkeypatch.setattr(services.notifications, "emit", broken)
        donation = make_donation(donor)

        claimed = claim(services, donation, ngo)
        assert claimed["status"] == "claimed"
        assert database.count("notification") == 0
        assert database.find_by_id("user", donor["_id"])["donations_count"] == 1

    def test_racing_claims_have_one_winner(self, services, database, donor, make_user, make_donation, monkeypatch):
        # MongoDB applies find_one_and_update atomically per document.
        lock = threading.Lock()
        update_where = database.update_where

        def atomic_update_where(*args, **kwargs):
            with lock:
                return update_where(*args, **kwargs)

        monkeypatch.setattr(database, "update_where", atomic_update_where)
        donation = make_donation(donor)
        ngos = [make_user(f"NGO {i}", user_type="ngo") for i in range(2)]
        barrier = threading.Barrier(len(ngos))
        won, lost = [], []

        def attempt(ngo):
            barrier.wait()
            try:
                claim(services, donation, ngo)
                won.append(str(ngo["_id"]))
            except ConflictError:
                lost.append(str(ngo["_id"]))

        threads = [threading.Thread(target=attempt, args=(ngo,)) for ngo in ngos]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(won) == 1
        assert len(lost) == 1
        assert database.find_by_id("donation", donation["_id"])["claimer_id"] == won[0]
        assert database.find_by_id("user", donor["_id"])["donations_count"] == 1
        assert database.count("notification", {"type": "donation_claimed"}) == 1

    def test_missing_donation(self, services, ngo):
        with pytest.raises(NotFoundError):
            services.donations.claim("6564f0a1b2c3d4e5f6a7b8c9", str(ngo["_id"]), "Feed Dhaka")
        with pytest.raises(NotFoundError):
            services.donations.claim("not-an-id", str(ngo["_id"]), "Feed Dhaka")


class TestComplete:
    def test_complete_claimed(self, services, database, donor, ngo, make_donation, clock):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        clock.advance(hours=1)

        completed = services.donations.complete(str(donation["_id"]))
        assert completed["status"] == "completed"
        assert completed["completed_at"] == clock.now
        assert database.count("notification", {"type": "donation_completed"}) == 1

    def test_complete_available_conflicts(self, services, donor, make_donation):
        donation = make_donation(donor)
        with pytest.raises(ConflictError):
            services.donations.complete(str(donation["_id"]))

    def test_complete_twice_conflicts(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        services.donations.complete(str(donation["_id"]))
        with pytest.raises(ConflictError):
            services.donations.complete(str(donation["_id"]))


class TestFeedback:
    def test_feedback_updates_rating(self, services, database, donor, ngo, make_donation, clock):
        donation = make_donation(donor)
        claim(services, donation, ngo)

        updated = services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 4, " Fresh and hot ")
        assert updated["feedback"]["ngo_rating"] == 4
        assert updated["feedback"]["ngo_comment"] == "Fresh and hot"
        assert updated["feedback"]["feedback_date"] == clock.now

        stored_donor = database.find_by_id("user", donor["_id"])
        assert stored_donor["rating_sum"] == 4
        assert stored_donor["total_ratings"] == 1
        assert stored_donor["average_rating"] == 4.0

        notification = database.find_one("notification", {"type": "feedback_received"})
        assert "Very Good (4/5)" in notification["message"]
        assert '"Fresh and hot"' in notification["message"]
        assert notification["data"]["rating"] == 4

    def test_feedback_on_completed(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        services.donations.complete(str(donation["_id"]))
        updated = services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 5)
        assert updated["feedback"]["ngo_rating"] == 5
        assert updated["feedback"]["ngo_comment"] is None

    def test_second_feedback_conflicts(self, services, database, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 5)

        with pytest.raises(ConflictError):
            services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 1)
        stored_donor = database.find_by_id("user", donor["_id"])
        assert stored_donor["total_ratings"] == 1
        assert stored_donor["average_rating"] == 5.0

    def test_only_claimer_can_rate(self, services, donor, ngo, make_user, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        other = make_user("Other NGO", user_type="ngo")
        with pytest.raises(ForbiddenError):
            services.donations.submit_feedback(str(donation["_id"]), str(other["_id"]), 3)

    def test_available_donation_cannot_be_rated(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        with pytest.raises(ConflictError):
            services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 3)

    @pytest.mark.parametrize("rating", [0, 6, "5", True, 4.5])
    def test_invalid_rating(self, services, donor, ngo, make_donation, rating):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        with pytest.raises(ValidationError):
            services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), rating)

    def test_comment_too_long(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        with pytest.raises(ValidationError):
            services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 3, "x" * 501)

    def test_side_effect_failures_keep_feedback(self, services, database, donor, ngo, make_donation, monkeypatch):
        donation = make_donation(donor)
        claim(services, donation, ngo)

        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(services.ratings, "apply_rating", broken)
        monkeypatch.setattr(services.notifications, "emit", broken)

        updated = services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), 4)
        assert updated["feedback"]["ngo_rating"] == 4
        assert database.find_by_id("donation", donation["_id"])["feedback"]["ngo_rating"] == 4
        assert database.find_by_id("user", donor["_id"])["total_ratings"] == 0
        assert database.count("notification", {"type": "feedback_received"}) == 0

        monkeypatch.undo()
        services.ratings.recalculate_all()
        repaired = database.find_by_id("user", donor["_id"])
        assert (repaired["rating_sum"], repaired["total_ratings"], repaired["average_rating"]) == (4, 1, 4.0)

    def test_average_over_several_donations(self, services, database, donor, ngo, make_donation):
        for rating in (5, 3):
            donation = make_donation(donor)
            claim(services, donation, ngo)
            services.donations.submit_feedback(str(donation["_id"]), str(ngo["_id"]), rating)

        stored_donor = database.find_by_id("user", donor["_id"])
        assert stored_donor["rating_sum"] == 8
        assert stored_donor["total_ratings"] == 2
        assert stored_donor["average_rating"] == 4.0


class TestLikes:
    def test_like_then_unlike(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)

        liked, now_liked = services.donations.toggle_like(str(donation["_id"]), str(ngo["_id"]))
        assert now_liked is True
        assert liked["likes"] == 1
        assert liked["liked_by"] == [str(ngo["_id"])]

        unliked, now_liked = services.donations.toggle_like(str(donation["_id"]), str(ngo["_id"]))
        assert now_liked is False
        assert unliked["likes"] == 0
        assert unliked["liked_by"] == []

    def test_likes_match_likers(self, services, donor, make_user, make_donation):
        donation = make_donation(donor)
        fans = [make_user(f"Fan {i}") for i in range(3)]
        for fan in fans:
            services.donations.toggle_like(str(donation["_id"]), str(fan["_id"]))
        doc, _ = services.donations.toggle_like(str(donation["_id"]), str(fans[0]["_id"]))
        assert doc["likes"] == 2
        assert doc["likes"] == len(doc["liked_by"])

    def test_like_missing_donation(self, services, ngo):
        with pytest.raises(NotFoundError):
            services.donations.toggle_like("6564f0a1b2c3d4e5f6a7b8c9", str(ngo["_id"]))


class TestEdits:
    def test_update_fields(self, services, donor, make_donation):
        donation = make_donation(donor)
        updated = services.donations.update(str(donation["_id"]), {"title": "Chicken biryani", "category": "FOOD"})
        assert updated["title"] == "Chicken biryani"
        assert updated["category"] == "food"

    def test_update_locked_field(self, services, donor, make_donation):
        donation = make_donation(donor)
        with pytest.raises(ValidationError):
            services.donations.update(str(donation["_id"]), {"status": "completed"})

    def test_update_past_expiry(self, services, donor, make_donation, clock):
        donation = make_donation(donor)
        with pytest.raises(ValidationError):
            services.donations.update(str(donation["_id"]), {"expiry_date": clock.now - timedelta(hours=1)})

    def test_update_requires_status(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        with pytest.raises(ConflictError):
            services.donations.update(str(donation["_id"]), {"title": "Late edit"}, require_status="available")

    def test_delete(self, services, database, donor, make_donation):
        donation = make_donation(donor)
        services.donations.delete(str(donation["_id"]), require_status="available")
        assert database.find_by_id("donation", donation["_id"]) is None
        with pytest.raises(NotFoundError):
            services.donations.delete(str(donation["_id"]))

    def test_delete_claimed_conflicts(self, services, donor, ngo, make_donation):
        donation = make_donation(donor)
        claim(services, donation, ngo)
        with pytest.raises(ConflictError):
            services.donations.delete(str(donation["_id"]), require_status="available")


class TestReads:
    def test_list_available_sweeps_expired(self, services, database, donor, make_donation, clock):
        soon = make_donation(donor, expiry_date=clock.now + timedelta(hours=1))
        open_ended = make_donation(donor, expiry_date=None)
        clock.advance(hours=2)

        listed = services.donations.list_available()
        assert [d["_id"] for d in listed] == [open_ended["_id"]]
        assert database.find_by_id("donation", soon["_id"])["status"] == "expired"

    def test_list_excludes_claimed(self, services, donor, ngo, make_donation):
        claimed = make_donation(donor)
        claim(services, claimed, ngo)
        available = make_donation(donor)
        assert [d["_id"] for d in services.donations.list_available()] == [available["_id"]]

    def test_newest_first_with_paging(self, services, donor, make_donation, clock):
        created = []
        for i in range(3):
            created.append(make_donation(donor, title=f"Batch {i}"))
            clock.advance(minutes=1)

        listed = services.donations.list_available()
        assert [d["title"] for d in listed] == ["Batch 2", "Batch 1", "Batch 0"]
        page = services.donations.list_available(skip=1, limit=1)
        assert [d["title"] for d in page] == ["Batch 1"]

    def test_category_filter(self, services, donor, make_donation):
        make_donation(donor)
        coats = make_donation(donor, title="Winter coats", category="clothing")
        listed = services.donations.list_available(category="Clothing")
        assert [d["_id"] for d in listed] == [coats["_id"]]

    def test_lists_by_donor_and_claimer(self, services, donor, ngo, make_donation):
        first = make_donation(donor)
        make_donation(donor)
        claim(services, first, ngo)
        assert len(services.donations.list_by_donor(str(donor["_id"]))) == 2
        assert [d["_id"] for d in services.donations.list_claimed_by(str(ngo["_id"]))] == [first["_id"]]

    def test_donor_profile(self, services, donor, ngo, make_donation):
        rated = make_donation(donor)
        claim(services, rated, ngo)
        services.donations.complete(str(rated["_id"]))
        services.donations.submit_feedback(str(rated["_id"]), str(ngo["_id"]), 5, "Great")
        make_donation(donor)

        profile = services.donations.donor_profile(str(donor["_id"]))
        assert profile["donor"]["name"] == "Star Kabab"
        assert profile["donor"]["average_rating"] == 5.0
        assert profile["donor"]["completed_donations_count"] == 1
        assert "email" not in profile["donor"]
        assert profile["review_count"] == 1
        assert profile["reviews"][0]["feedback"]["ngo_comment"] == "Great"

    def test_donor_profile_missing(self, services):
        with pytest.raises(NotFoundError):
            services.donations.donor_profile("6564f0a1b2c3d4e5f6a7b8c9")
