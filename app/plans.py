"""Subscription plans and their storage limits."""

GB = 1024 * 1024 * 1024
TB = 1024 * GB

PLANS = {
    "free": {
        "id": "free",
        "name": "Free",
        "storage_limit_bytes": 5 * GB,
        "monthly_price": 0,
        "annual_price": 0,
    },
    "starter": {
        "id": "starter",
        "name": "Starter",
        "storage_limit_bytes": 1 * TB,
        "monthly_price": 5,
        "annual_price": 50,
    },
    "pro": {
        "id": "pro",
        "name": "Pro",
        "storage_limit_bytes": 10 * TB,
        "monthly_price": 10,
        "annual_price": 100,
    },
}

DEFAULT_PLAN_ID = "free"
# Lowest to highest tier
PLAN_ORDER = ["free", "starter", "pro"]
BILLING_CYCLES = ("monthly", "annual")


def plan_limit(plan_id: str | None) -> int:
    """Storage limit for plan_id, falling back to the default plan."""
    plan = PLANS.get(plan_id or DEFAULT_PLAN_ID) or PLANS[DEFAULT_PLAN_ID]
    return plan["storage_limit_bytes"]
