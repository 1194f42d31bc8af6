import unittest
from datetime import date

from bloomfund.analytics import AnalyticsService
from bloomfund.db import CampaignRecord, InMemoryDbClient
from bloomfund.errors import ValidationFailedError
from bloomfund.queue import InMemoryEventQueue

DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self):
        self.now = 100 * DAY

    def __call__(self):
        return self.now


class BrokenDb(InMemoryDbClient):
    def save_analytics_events(self, events):
        raise ConnectionError("database unavailable")


class AnalyticsServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.queue = InMemoryEventQueue()
        self.clock = FakeClock()
        self.analytics = AnalyticsService(self.db, self.queue, batch_size=3, clock=self.clock)
        self.campaign = self.db.create_campaign(
            CampaignRecord(
                title="Cafe",
                description="Coffee",
                business_name="Beans",
                owner_name="Jo",
                funding_goal=1_000,
                category="food",
                location="Here",
                start_date=date(2024, 1, 1),
                end_date=date(2024, 2, 1),
            )
        )

    def test_events_buffer_until_batch_size(self):
        self.analytics.track("page_view", user_id="u-1")
        self.analytics.track("page_view", user_id="u-1")
        self.assertEqual(self.queue.size(), 2)
        self.assertEqual(self.db.events, [])

        self.analytics.track("interaction", user_id="u-1")
        self.assertEqual(self.queue.size(), 0)
        self.assertEqual(len(self.db.events), 3)

    def test_unknown_event_type(self):
        with self.assertRaises(ValidationFailedError):
            self.analytics.track("bogus")

    def test_views_and_shares_bump_counters(self):
        self.analytics.track("campaign_view", campaign_id=self.campaign.id)
        self.analytics.track("social_share", campaign_id=self.campaign.id)
        campaign = self.db.get_campaign(self.campaign.id)
        self.assertEqual((campaign.views_count, campaign.shares_count), (1, 1))

    def test_campaign_report(self):
        cid = self.campaign.id
        for _ in range(4):
            self.analytics.track("campaign_view", campaign_id=cid)
        self.analytics.track("donation", campaign_id=cid, user_id="u-1", data={"amount": 1_000})
        self.analytics.track("donation", campaign_id=cid, user_id="u-1", data={"amount": 3_000})
        self.analytics.track("donation", campaign_id=cid, data={"amount": 2_000})
        self.analytics.track("donation", campaign_id=cid, data={"amount": 2_000})
        self.analytics.track("social_share", campaign_id=cid)

        report = self.analytics.campaign_report(cid, period="7d")
        self.assertEqual(report["views"], 4)
        self.assertEqual(report["donations"], 4)
        self.assertEqual(report["total_donated"], 8_000)
        self.assertEqual(report["unique_donors"], 2)
        self.assertEqual(report["shares"], 1)
        self.assertAlmostEqual(report["conversion_rate"], 100.0)
        self.assertAlmostEqual(report["average_donation"], 2_000.0)

    def test_report_period_window(self):
        cid = self.campaign.id
        self.analytics.track("campaign_view", campaign_id=cid)
        self.clock.now += 10 * DAY
        self.analytics.track("campaign_view", campaign_id=cid)
        self.assertEqual(self.analytics.campaign_report(cid, period="7d")["views"], 1)
        self.assertEqual(self.analytics.campaign_report(cid, period="all")["views"], 2)
        with self.assertRaises(ValidationFailedError):
            self.analytics.campaign_report(cid, period="1y")

    def test_user_and_platform_reports(self):
        self.analytics.track("page_view", user_id="u-1")
        self.analytics.track("interaction", user_id="u-1")
        self.analytics.track("donation", user_id="u-1", data={"amount": 500})
        self.analytics.track("campaign_created", user_id="u-2")

        user = self.analytics.user_report("u-1")
        self.assertEqual(user["engagement_score"], (1 + 2 + 5) / 10)

        platform = self.analytics.platform_report()
        self.assertEqual(platform["total_events"], 4)
        self.assertEqual(platform["unique_users"], 2)
        self.assertEqual(platform["event_types"]["page_view"], 1)
        self.assertEqual(platform["average_events_per_user"], 2.0)

    def test_failed_flush_requeues_events(self):
        analytics = AnalyticsService(BrokenDb(), self.queue, batch_size=2, clock=self.clock)
        analytics.track("page_view")
        with self.assertLogs("bloomfund.analytics", level="ERROR"):
            analytics.track("page_view")
        self.assertEqual(self.queue.size(), 2)

        with self.assertRaises(ConnectionError):
            analytics.flush()
        self.assertEqual(self.queue.size(), 2)


if __name__ == "__main__":
    unittest.main()
