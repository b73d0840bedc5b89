"""Plan store: the locally mirrored premium_plans table."""

import logging
from typing import Optional

from guardian.models.plan import Plan
from guardian.services.stripe_fields import utcnow
from guardian.services.supabase import SupabaseClient

logger = logging.getLogger(__name__)

TABLE = "premium_plans"


class PlanStore:
    def __init__(self, client: SupabaseClient):
        self.client = client

    async def get(self, plan_id: str) -> Optional[Plan]:
        db = await self.client.get_client()
        rows = await self.client.execute(db.table(TABLE).select("*").eq("id", plan_id).limit(1), f"read {TABLE}")
        return Plan.from_row(rows[0]) if rows else None

    async def update_stripe_ids(self, plan_id: str, product_id: str, price_id: str) -> None:
        """Record the Stripe product and price backing a plan."""
        db = await self.client.get_client()
        values = {
            "stripe_product_id": product_id,
            "stripe_price_id": price_id,
            "updated_at": utcnow().isoformat(),
        }
        await self.client.execute(db.table(TABLE).update(values).eq("id", plan_id), f"update {TABLE}")
        logger.info(f"Stored Stripe ids for plan {plan_id}: {product_id} / {price_id}")

    async def ping(self) -> None:
        db = await self.client.get_client()
        await self.client.execute(db.table(TABLE).select("id").limit(1), f"ping {TABLE}")
