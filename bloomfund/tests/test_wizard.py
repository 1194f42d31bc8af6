import unittest
from datetime import date, timedelta

from bloomfund.db import UserRecord
from bloomfund.enums import CampaignStatus, MediaType
from bloomfund.schemas import CampaignDraft, MediaDraft, MilestoneDraft, RewardTierDraft
from bloomfund.wizard import (
    STEPS,
    build_campaign,
    next_step,
    owner_display_name,
    previous_step,
    progress_percent,
    validate_draft,
    validate_step,
)

TODAY = date(2024, 5, 1)


def complete_draft(**overrides) -> CampaignDraft:
    values = dict(
        title="  Neighborhood Bookshop ",
        subtitle="More shelves",
        business_name="Pages",
        business_description="Used and new books",
        business_category="Retail",
        location="Boston, MA",
        website="  ",
        funding_goal=20_000,
        min_contribution=500,
        campaign_deadline=TODAY + timedelta(days=45),
        media=[
            MediaDraft(type=MediaType.VIDEO, url="https://cdn.test/tour.mp4"),
            MediaDraft(type=MediaType.IMAGE, url="https://cdn.test/front.jpg", caption="Storefront"),
        ],
    )
    values.update(overrides)
    return CampaignDraft(**values)


class WizardValidationTests(unittest.TestCase):
    def test_steps_in_order(self):
        self.assertEqual(
            STEPS, ("category", "basics", "media", "goal", "rewards", "milestones", "review")
        )
        self.assertAlmostEqual(progress_percent("review"), 100.0)

    def test_basics_errors_in_field_order(self):
        errors = validate_step(CampaignDraft(), "basics", today=TODAY)
        self.assertEqual(
            errors,
            [
                "Campaign title is required",
                "Campaign subtitle is required",
                "Business name is required",
                "Business description is required",
                "Location is required",
            ],
        )

    def test_goal_step(self):
        draft = complete_draft(funding_goal=0, min_contribution=-1, campaign_deadline=TODAY)
        self.assertEqual(
            validate_step(draft, "goal", today=TODAY),
            [
                "Valid funding goal is required",
                "Valid minimum contribution is required",
                "Campaign deadline must be in the future",
            ],
        )

    def test_optional_steps_always_valid(self):
        for step in ("rewards", "milestones", "review"):
            self.assertEqual(validate_step(CampaignDraft(), step, today=TODAY), [])

    def test_unknown_step(self):
        with self.assertRaises(ValueError):
            validate_step(CampaignDraft(), "payment", today=TODAY)

    def test_complete_draft_is_valid(self):
        self.assertEqual(validate_draft(complete_draft(), today=TODAY), [])

    def test_navigation(self):
        stuck = next_step(CampaignDraft(), "media", today=TODAY)
        self.assertEqual(stuck.step, "media")
        self.assertFalse(stuck.valid)

        moved = next_step(complete_draft(), "media", today=TODAY)
        self.assertEqual(moved.step, "goal")
        self.assertEqual(next_step(complete_draft(), "review", today=TODAY).step, "review")
        self.assertEqual(previous_step("category").step, "category")
        self.assertEqual(previous_step("goal").step, "media")


class BuildCampaignTests(unittest.TestCase):
    def test_normalizes_draft(self):
        draft = complete_draft(
            reward_tiers=[
                RewardTierDraft(amount=1_000, title="Tote bag"),
                RewardTierDraft(amount=0, title="Free"),
                RewardTierDraft(amount=5_000, title="  "),
            ],
            milestones=[
                MilestoneDraft(title="Shelves", target_amount=10_000),
                MilestoneDraft(title="Nothing", target_amount=0),
            ],
        )
        plan = build_campaign(draft, "owner-1", today=TODAY)

        campaign = plan.campaign
        self.assertEqual(campaign.title, "Neighborhood Bookshop")
        self.assertEqual(campaign.category, "retail")
        self.assertIsNone(campaign.website)
        self.assertEqual(campaign.cover_image, "https://cdn.test/front.jpg")
        self.assertEqual(campaign.status, CampaignStatus.ACTIVE)
        self.assertEqual(campaign.start_date, TODAY)
        self.assertEqual(campaign.current_funding, 0)
        self.assertEqual(campaign.owner_name, "Campaign Owner")

        self.assertEqual([t.title for t in plan.reward_tiers], ["Tote bag"])
        self.assertEqual(plan.reward_tiers[0].description, "Tote bag")
        self.assertEqual([m.display_order for m in plan.media], [0, 1])
        self.assertEqual(plan.media[1].caption, "Storefront")
        self.assertEqual([m.title for m in plan.milestones], ["Shelves"])
        self.assertTrue(all(t.campaign_id == campaign.id for t in plan.reward_tiers))

    def test_owner_display_name_fallbacks(self):
        self.assertEqual(owner_display_name(UserRecord(id="1", email="a@b.c", full_name=" Ana ")), "Ana")
        self.assertEqual(owner_display_name(UserRecord(id="1", email="jo@b.c")), "jo")
        self.assertEqual(owner_display_name(UserRecord(id="1", email="")), "Campaign Owner")


if __name__ == "__main__":
    unittest.main()
