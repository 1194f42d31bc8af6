import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from fastapi.testclient import TestClient

from bloomfund.app import create_app
from bloomfund.config import get_settings
from bloomfund.db import CampaignRecord, InMemoryDbClient
from bloomfund.dependencies import (
    get_db_client,
    get_request_monitor,
    get_storage_client,
    reset_backends,
)
from bloomfund.enums import CampaignStatus


def utc_today():
    return datetime.now(timezone.utc).date()


OWNER = {"X-User-Id": "owner-1"}
BACKER = {"X-User-Id": "backer-1"}
PAYMENTS = {"X-Payments-Secret": "whsec-test"}


def draft_payload(**overrides):
    payload = {
        "title": "Corner Bakery Expansion",
        "subtitle": "A second oven for the neighborhood",
        "business_name": "Corner Bakery",
        "business_description": "Fresh bread every morning since 2009.",
        "business_category": "Food",
        "location": "Portland, OR",
        "funding_goal": 10_000,
        "min_contribution": 500,
        "campaign_deadline": (utc_today() + timedelta(days=20)).isoformat(),
        "media": [{"type": "image", "url": "https://cdn.test/oven.jpg"}],
        "reward_tiers": [
            {"amount": 2_500, "title": "Loaf club", "description": "A loaf a week"},
            {"amount": 0, "title": "Dropped"},
        ],
        "milestones": [{"title": "Oven deposit", "target_amount": 5_000}],
    }
    payload.update(overrides)
    return payload


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        env = mock.patch.dict(os.environ, {"BLOOMFUND_PAYMENTS_WEBHOOK_SECRET": "whsec-test"})
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        reset_backends()
        self.client = TestClient(create_app())
        db = get_db_client()
        if isinstance(db, InMemoryDbClient):
            db.reset()
        for user_id, email in (("owner-1", "owner@bakery.test"), ("backer-1", "fan@mail.test")):
            response = self.client.post("/api/users", json={"id": user_id, "email": email})
            self.assertEqual(response.status_code, 201)

    def _create_campaign(self, **overrides):
        response = self.client.post("/api/campaigns", json=draft_payload(**overrides), headers=OWNER)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["campaign"]

    def _pledge(self, campaign_id, amount=1_000, headers=BACKER, **fields):
        payload = {"amount": amount, "donor_name": "Sam", "donor_email": "fan@mail.test"}
        payload.update(fields)
        return self.client.post(f"/api/campaigns/{campaign_id}/pledges", json=payload, headers=headers)

    def _confirm(self, pledge_id, status="succeeded"):
        return self.client.post(
            f"/api/pledges/{pledge_id}/confirm", json={"status": status}, headers=PAYMENTS
        )

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_wizard_blocks_next_until_step_is_valid(self):
        response = self.client.post(
            "/api/wizard/step",
            json={"step": "category", "draft": {}, "direction": "next"},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["step"], "category")
        self.assertFalse(payload["valid"])
        self.assertEqual(payload["errors"], ["Please select a business category"])

        response = self.client.post(
            "/api/wizard/step",
            json={
                "step": "category",
                "draft": {"business_category": "food"},
                "direction": "next",
            },
        )
        payload = response.json()
        self.assertEqual(payload["step"], "basics")
        self.assertAlmostEqual(payload["progress_percent"], 2 / 7 * 100)

    def test_create_campaign_requires_user(self):
        response = self.client.post("/api/campaigns", json=draft_payload())
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "You must be signed in to create a campaign.")

    def test_create_campaign_rejects_invalid_draft(self):
        response = self.client.post(
            "/api/campaigns", json=draft_payload(title=" ", media=[]), headers=OWNER
        )
        self.assertEqual(response.status_code, 400)
        errors = response.json()["errors"]
        self.assertIn("Campaign title is required", errors)
        self.assertIn("At least one media item is required", errors)

    def test_create_and_get_campaign(self):
        campaign = self._create_campaign()
        self.assertEqual(campaign["status"], "active")
        self.assertEqual(campaign["category"], "food")
        self.assertEqual(campaign["cover_image"], "https://cdn.test/oven.jpg")
        self.assertEqual(len(campaign["reward_tiers"]), 1)
        self.assertEqual(campaign["funding_percentage"], 0)
        self.assertEqual(campaign["days_remaining"], 20)
        self.assertEqual(campaign["owner_name"], "owner")

        response = self.client.get(f"/api/campaigns/{campaign['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["campaign"]["title"], "Corner Bakery Expansion")

        listing = self.client.get("/api/campaigns", params={"status": "active"})
        self.assertEqual([c["id"] for c in listing.json()["campaigns"]], [campaign["id"]])

    def test_missing_campaign_is_404(self):
        response = self.client.get("/api/campaigns/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "Campaign not found")

    def test_search_filters_and_sorts(self):
        self._create_campaign(
            title="Bike Repair Co-op",
            business_name="Spoke Shop",
            business_description="Tune-ups and used bikes.",
            business_category="Services",
            funding_goal=20_000,
        )
        self._create_campaign(title="Bakery Ovens")
        response = self.client.get(
            "/api/campaigns/search", params={"query": "bake", "category": "All Categories"}
        )
        self.assertEqual(response.status_code, 200)
        titles = [c["title"] for c in response.json()["campaigns"]]
        self.assertEqual(titles, ["Bakery Ovens"])

        response = self.client.get(
            "/api/campaigns/search", params={"sort_by": "funding_goal", "sort_order": "asc"}
        )
        goals = [c["funding_goal"] for c in response.json()["campaigns"]]
        self.assertEqual(goals, sorted(goals))

    def test_pledge_lifecycle(self):
        campaign = self._create_campaign()
        tier_id = campaign["reward_tiers"][0]["id"]

        response = self.client.post(
            f"/api/campaigns/{campaign['id']}/pledges",
            json={
                "amount": 10_000,
                "donor_name": "Sam",
                "donor_email": "fan@mail.test",
                "reward_tier_id": tier_id,
            },
            headers=BACKER,
        )
        self.assertEqual(response.status_code, 201, response.text)
        pledge = response.json()["pledge"]
        self.assertEqual(pledge["status"], "pending")
        self.assertEqual(pledge["platform_fee"], 530)
        self.assertEqual(pledge["total_charge"], 10_530)

        response = self._confirm(pledge["id"])
        self.assertEqual(response.status_code, 200)
        response = self._confirm(pledge["id"])
        self.assertEqual(response.status_code, 409)

        detail = self.client.get(f"/api/campaigns/{campaign['id']}").json()["campaign"]
        self.assertEqual(detail["current_funding"], 10_000)
        self.assertEqual(detail["funding_percentage"], 100)
        self.assertEqual(detail["total_backers"], 1)
        self.assertTrue(detail["campaign_milestones"][0]["is_completed"])

        notifications = self.client.get("/api/notifications", headers=OWNER).json()["notifications"]
        kinds = {n["type"] for n in notifications}
        self.assertTrue({"new_pledge", "campaign_funded", "milestone_reached"} <= kinds)

        leaderboard = self.client.get(f"/api/campaigns/{campaign['id']}/leaderboard").json()
        self.assertEqual(leaderboard["entries"][0]["donor_name"], "Sam")

        stats = self.client.get(f"/api/campaigns/{campaign['id']}/pledge-stats").json()
        self.assertEqual(stats, {"campaign_id": campaign["id"], "total_amount": 10_000, "backer_count": 1})

        mine = self.client.get("/api/users/me/pledges", headers=BACKER).json()["pledges"]
        self.assertEqual(mine[0]["reward_tier"]["title"], "Loaf club")

    def test_pledge_below_minimum_is_rejected(self):
        campaign = self._create_campaign()
        response = self.client.post(
            f"/api/campaigns/{campaign['id']}/pledges",
            json={"amount": 400, "donor_name": "Sam", "donor_email": "fan@mail.test"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"], ["Minimum pledge is $5.00"])

    def test_fulfillment_moves_forward_only(self):
        campaign = self._create_campaign()
        pledge = self.client.post(
            f"/api/campaigns/{campaign['id']}/pledges",
            json={
                "amount": 2_500,
                "donor_name": "Sam",
                "donor_email": "fan@mail.test",
                "reward_tier_id": campaign["reward_tiers"][0]["id"],
            },
            headers=BACKER,
        ).json()["pledge"]
        self._confirm(pledge["id"])

        url = f"/api/pledges/{pledge['id']}/fulfillment"
        response = self.client.patch(url, json={"status": "shipped"}, headers=BACKER)
        self.assertEqual(response.status_code, 403)

        response = self.client.patch(
            url, json={"status": "shipped", "tracking_number": "1Z999"}, headers=OWNER
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["pledge"]["fulfillment_status"], "shipped")

        response = self.client.patch(url, json={"status": "processing"}, headers=OWNER)
        self.assertEqual(response.status_code, 409)

        notifications = self.client.get("/api/notifications", headers=BACKER).json()["notifications"]
        self.assertIn("1Z999", notifications[0]["message"])

    def test_campaign_updates_notify_backers(self):
        campaign = self._create_campaign()
        pledge = self.client.post(
            f"/api/campaigns/{campaign['id']}/pledges",
            json={"amount": 1_000, "donor_name": "Sam", "donor_email": "fan@mail.test"},
            headers=BACKER,
        ).json()["pledge"]
        self._confirm(pledge["id"])

        response = self.client.post(
            f"/api/campaigns/{campaign['id']}/updates",
            json={"title": "Oven ordered", "content": "It arrives next week."},
            headers=OWNER,
        )
        self.assertEqual(response.status_code, 201)
        updates = self.client.get(f"/api/campaigns/{campaign['id']}/updates").json()["updates"]
        self.assertEqual(updates[0]["title"], "Oven ordered")

        notifications = self.client.get("/api/notifications", headers=BACKER).json()["notifications"]
        self.assertEqual(notifications[0]["type"], "campaign_update")

    def test_owner_can_cancel_campaign(self):
        campaign = self._create_campaign()
        url = f"/api/campaigns/{campaign['id']}"
        self.assertEqual(
            self.client.patch(url, json={"status": "cancelled"}, headers=BACKER).status_code, 403
        )
        response = self.client.patch(url, json={"status": "cancelled"}, headers=OWNER)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["campaign"]["status"], "cancelled")
        self.assertEqual(
            self.client.patch(url, json={"status": "cancelled"}, headers=OWNER).status_code, 409
        )

    def test_payout_request_flow(self):
        db = get_db_client()
        campaign = db.create_campaign(
            CampaignRecord(
                title="Finished",
                description="done",
                business_name="Done Co",
                owner_name="Owner",
                owner_id="owner-1",
                funding_goal=5_000,
                current_funding=6_000,
                category="food",
                location="Here",
                start_date=utc_today() - timedelta(days=60),
                end_date=utc_today() - timedelta(days=10),
                status=CampaignStatus.COMPLETED,
            )
        )
        url = f"/api/campaigns/{campaign.id}/payout"

        eligibility = self.client.get(url, headers=OWNER).json()
        self.assertTrue(eligibility["eligible"])
        self.assertEqual(eligibility["days_remaining"], 27)

        response = self.client.post(url, headers=OWNER)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["action"], "setup_payout_account")

        self.client.patch("/api/users/me", json={"payout_account_id": "acct_1"}, headers=OWNER)
        response = self.client.post(url, headers=OWNER)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["payout_status"], "requested")
        self.assertEqual(response.json()["payout_amount"], 6_000)

        self.assertEqual(self.client.post(url, headers=OWNER).status_code, 409)

        response = self.client.post(
            f"{url}/settle", json={"status": "paid", "reference": "tr_1"}, headers=PAYMENTS
        )
        self.assertEqual(response.json()["payout_status"], "paid")
        self.assertEqual(response.json()["payout_reference"], "tr_1")

    def test_media_upload(self):
        response = self.client.post(
            "/api/media/upload",
            files=[("files", ("oven.png", b"\x89PNG", "image/png"))],
            data={"folder": "campaigns"},
            headers=OWNER,
        )
        self.assertEqual(response.status_code, 201, response.text)
        media = response.json()["media"][0]
        self.assertEqual(media["type"], "image")
        self.assertTrue(media["storage_path"].startswith("campaigns/owner-1/"))
        self.assertTrue(get_storage_client().exists(media["storage_path"]))

        response = self.client.post(
            "/api/media/upload",
            files=[("files", ("notes.txt", b"hello", "text/plain"))],
            headers=OWNER,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Invalid upload")

    def test_sign_url_uses_storage_client(self):
        response = self.client.get("/api/sign-url", params={"path": "foo/bar.png"})
        self.assertEqual(response.status_code, 200)
        self.assertIn("foo/bar.png", response.json()["url"])

    def test_track_event_and_campaign_report(self):
        campaign = self._create_campaign()
        for _ in range(2):
            response = self.client.post(
                "/api/analytics/events",
                json={"event_type": "campaign_view", "campaign_id": campaign["id"]},
            )
            self.assertEqual(response.status_code, 202)
            self.assertEqual(response.json()["status"], "queued")

        self.assertEqual(get_db_client().get_campaign(campaign["id"]).views_count, 2)

        report = self.client.get(
            f"/api/analytics/campaigns/{campaign['id']}", params={"period": "7d"}, headers=OWNER
        ).json()
        self.assertEqual(report["views"], 2)

        response = self.client.get(
            f"/api/analytics/campaigns/{campaign['id']}", params={"period": "1y"}, headers=OWNER
        )
        self.assertEqual(response.status_code, 400)

    def test_signup_is_rate_limited(self):
        # setUp already used two of the three sign-ups allowed per hour.
        response = self.client.post("/api/users", json={"id": "u3", "email": "u3@mail.test"})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "0")

        response = self.client.post("/api/users", json={"id": "u4", "email": "u4@mail.test"})
        self.assertEqual(response.status_code, 429)
        self.assertIn("Retry-After", response.headers)
        self.assertEqual(response.json()["error"], "Rate limit exceeded")

    def test_public_profile_hides_contact_details(self):
        response = self.client.get("/api/users/owner-1")
        self.assertEqual(response.status_code, 200)
        user = response.json()["user"]
        self.assertNotIn("email", user)
        self.assertIn("dicebear", user["avatar_url"])

    def test_payment_callbacks_require_secret(self):
        campaign = self._create_campaign()
        pledge = self._pledge(campaign["id"]).json()["pledge"]
        url = f"/api/pledges/{pledge['id']}/confirm"

        response = self.client.post(url, json={"status": "succeeded"})
        self.assertEqual(response.status_code, 401)
        response = self.client.post(
            url, json={"status": "succeeded"}, headers={"X-Payments-Secret": "guess"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(get_db_client().get_campaign(campaign["id"]).current_funding, 0)

        settle = f"/api/campaigns/{campaign['id']}/payout/settle"
        response = self.client.post(settle, json={"status": "paid"}, headers=OWNER)
        self.assertEqual(response.status_code, 401)

        self.assertEqual(self._confirm(pledge["id"]).status_code, 200)

    def test_failed_confirmation_can_be_retried(self):
        campaign = self._create_campaign()
        pledge = self._pledge(campaign["id"], amount=2_000).json()["pledge"]
        db = get_db_client()

        with mock.patch.object(db, "settle_pledge", side_effect=ConnectionError("db down")):
            with self.assertRaises(ConnectionError):
                self._confirm(pledge["id"])
        self.assertEqual(db.get_pledge(pledge["id"]).status.value, "pending")
        self.assertEqual(db.get_campaign(campaign["id"]).current_funding, 0)

        self.assertEqual(self._confirm(pledge["id"]).status_code, 200)
        self.assertEqual(db.get_campaign(campaign["id"]).current_funding, 2_000)

    def test_funded_notification_is_sent_once(self):
        campaign = self._create_campaign()
        for amount in (6_000, 6_000, 1_000):
            pledge = self._pledge(campaign["id"], amount=amount).json()["pledge"]
            self.assertEqual(self._confirm(pledge["id"]).status_code, 200)

        notifications = self.client.get("/api/notifications", headers=OWNER).json()["notifications"]
        funded = [n for n in notifications if n["type"] == "campaign_funded"]
        self.assertEqual(len(funded), 1)

    def test_pledges_rejected_on_closed_campaigns(self):
        cancelled = self._create_campaign()
        self.client.patch(
            f"/api/campaigns/{cancelled['id']}", json={"status": "cancelled"}, headers=OWNER
        )
        response = self._pledge(cancelled["id"])
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "Campaign is not accepting pledges")

        ended = get_db_client().create_campaign(
            CampaignRecord(
                title="Ended",
                description="over",
                business_name="Late Co",
                owner_name="Owner",
                owner_id="owner-1",
                funding_goal=5_000,
                category="food",
                location="Here",
                start_date=utc_today() - timedelta(days=30),
                end_date=utc_today() - timedelta(days=1),
            )
        )
        response = self._pledge(ended.id)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "Campaign has ended")

    def test_pledge_reward_tier_checks(self):
        campaign = self._create_campaign()
        other = self._create_campaign(title="Second Oven")
        foreign_tier = other["reward_tiers"][0]["id"]

        response = self._pledge(campaign["id"], amount=3_000, reward_tier_id=foreign_tier)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"], ["Reward tier does not belong to this campaign"])

        tier = campaign["reward_tiers"][0]["id"]
        response = self._pledge(campaign["id"], amount=1_000, reward_tier_id=tier)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["errors"], ["The Loaf club reward requires at least $25.00"]
        )

    def test_upload_rejects_more_than_ten_files(self):
        files = [("files", (f"photo{i}.png", b"\x89PNG", "image/png")) for i in range(11)]
        response = self.client.post("/api/media/upload", files=files, headers=OWNER)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"], ["At most 10 files can be uploaded at once"])
        self.assertEqual(get_storage_client().stored_objects, {})

    def test_recommended_excludes_current_campaign(self):
        current = self._create_campaign(title="Current")
        halfway = self._create_campaign(title="Halfway")
        started = self._create_campaign(title="Started")
        for campaign, amount in ((started, 2_000), (halfway, 5_000)):
            pledge = self._pledge(campaign["id"], amount=amount).json()["pledge"]
            self._confirm(pledge["id"])

        response = self.client.get("/api/campaigns/recommended", params={"exclude": current["id"]})
        self.assertEqual(response.status_code, 200)
        titles = [c["title"] for c in response.json()["campaigns"]]
        self.assertEqual(titles, ["Halfway", "Started"])

    def test_cached_reads_refresh_after_pledge(self):
        campaign = self._create_campaign()
        stats = self.client.get("/api/campaigns/stats").json()
        self.assertEqual(stats, {"total_campaigns": 1, "total_raised": 0, "total_backers": 0})
        listing = self.client.get("/api/campaigns").json()["campaigns"]
        self.assertEqual(listing[0]["current_funding"], 0)
        found = self.client.get("/api/campaigns/search", params={"query": "bakery"}).json()
        self.assertEqual(found["campaigns"][0]["current_funding"], 0)

        pledge = self._pledge(campaign["id"], amount=2_000).json()["pledge"]
        self._confirm(pledge["id"])

        stats = self.client.get("/api/campaigns/stats").json()
        self.assertEqual(stats, {"total_campaigns": 1, "total_raised": 2_000, "total_backers": 1})
        listing = self.client.get("/api/campaigns").json()["campaigns"]
        self.assertEqual(listing[0]["current_funding"], 2_000)
        found = self.client.get("/api/campaigns/search", params={"query": "bakery"}).json()
        self.assertEqual(found["campaigns"][0]["current_funding"], 2_000)

    def test_unknown_status_is_rejected(self):
        response = self.client.get("/api/campaigns", params={"status": "archived"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"], ["Unknown status 'archived'"])
        response = self.client.get("/api/campaigns/search", params={"status": "archived"})
        self.assertEqual(response.status_code, 400)

    def test_presigned_upload_is_scoped_to_caller(self):
        params = {"op": "put", "filename": "oven.png", "content_type": "image/png"}
        self.assertEqual(self.client.get("/api/sign-url", params=params).status_code, 401)

        response = self.client.get("/api/sign-url", params=params, headers=OWNER)
        self.assertEqual(response.status_code, 200)
        path = response.json()["path"]
        self.assertTrue(path.startswith("campaigns/owner-1/"))
        self.assertTrue(path.endswith(".png"))

        response = self.client.get(
            "/api/sign-url", params={**params, "content_type": "text/html"}, headers=OWNER
        )
        self.assertEqual(response.status_code, 400)

    def test_media_delete_limited_to_own_uploads(self):
        media = self.client.post(
            "/api/media/upload",
            files=[("files", ("oven.png", b"\x89PNG", "image/png"))],
            headers=OWNER,
        ).json()["media"][0]
        path = media["storage_path"]

        response = self.client.delete("/api/media", params={"path": path}, headers=BACKER)
        self.assertEqual(response.status_code, 403)
        response = self.client.delete(
            "/api/media", params={"path": "campaigns/../owner-1"}, headers=OWNER
        )
        self.assertEqual(response.status_code, 403)
        self.assertTrue(get_storage_client().exists(path))

        response = self.client.delete("/api/media", params={"path": path}, headers=OWNER)
        self.assertEqual(response.status_code, 204)
        self.assertFalse(get_storage_client().exists(path))

    def test_monitoring_reports_error_rate(self):
        get_request_monitor().record("GET", "/api/broken", 500, 12.0)

        status = self.client.get("/api/monitoring/status").json()
        self.assertEqual(status["errors"], 1)
        self.assertGreater(status["error_rate"], 0)
        self.assertEqual(status["recent_errors"][0]["path"], "/api/broken")

        health = self.client.get("/api/health").json()
        self.assertEqual(health["status"], "degraded")
        self.assertEqual(health["checks"]["requests"]["status"], "unhealthy")


if __name__ == "__main__":
    unittest.main()
