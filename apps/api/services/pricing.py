"""Credit packs and subscription plans sold through the payment processor, and per-scan costs."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from config import settings


# Prices are display values only; charging and tax happen at the payment processor.
CREDIT_PACKS: Dict[str, Dict[str, Any]] = {
    "starter": {
        "name": "Starter Pack",
        "price": 29,
        "currency": "GBP",
        "credits": 50,
        "recommended_for": "Perfect for testing and small projects",
    },
    "pro": {
        "name": "Pro Pack",
        "price": 99,
        "currency": "GBP",
        "credits": 250,
        "recommended_for": "Great for small teams and growing businesses",
    },
}


# Recurring plans are renewed by the payment processor; each renewal is a separate purchase event.
SUBSCRIPTION_PLANS: Dict[str, Dict[str, Any]] = {
    "pro_monthly": {
        "name": "Pro Subscription",
        "price": 20,
        "currency": "GBP",
        "credits": 100,
        "subscription_tier": "pro",
        "subscription_days": 30,
        "recommended_for": "Regular checks with 100 scans every month",
    },
}


def scan_costs() -> Dict[str, int]:
    return {
        "basic": max(int(settings.SCAN_CREDIT_COST), 1),
        "deep": max(int(settings.DEEP_SCAN_CREDIT_COST), 1),
    }


def resolve_scan_cost(scan_type: Optional[str]) -> int:
    """Cost for a scan type. Unknown types are rejected, never priced by the caller."""
    costs = scan_costs()
    key = (scan_type or "basic").strip().lower()
    if key not in costs:
        raise ValueError(f"Unknown scan type: {scan_type}")
    return costs[key]


def get_pack(pack_key: str) -> Optional[Dict[str, Any]]:
    pack = CREDIT_PACKS.get((pack_key or "").strip().lower())
    if pack is None:
        return None
    return {"key": pack_key.strip().lower(), **pack}


def list_packs() -> List[Dict[str, Any]]:
    packs = []
    for key in CREDIT_PACKS:
        pack = get_pack(key)
        pack["pence_per_credit"] = round(pack["price"] * 100 / pack["credits"])
        packs.append(pack)
    return packs


def suggest_pack(expected_credits: int) -> Dict[str, Any]:
    """Cheapest-per-credit pack covering ``expected_credits``, tie-broken by least overbuy."""
    suitable = [pack for pack in list_packs() if pack["credits"] >= expected_credits]
    if not suitable:
        return {
            "recommended": "pro",
            "alternatives": [],
            "reason": "Your usage exceeds our largest pack. Consider multiple Pro packs.",
        }
    suitable.sort(key=lambda pack: (pack["pence_per_credit"], pack["credits"] - expected_credits))
    best = suitable[0]
    utilization = round(expected_credits / best["credits"] * 100)
    return {
        "recommended": best["key"],
        "alternatives": [pack["key"] for pack in suitable[1:]],
        "reason": f"{best['name']} offers the best value for {expected_credits} credits at {utilization}% utilization",
    }


def get_subscription_plan(plan_key: str) -> Optional[Dict[str, Any]]:
    key = (plan_key or "").strip().lower()
    plan = SUBSCRIPTION_PLANS.get(key)
    if plan is None:
        return None
    return {"key": key, **plan}


def list_subscription_plans() -> List[Dict[str, Any]]:
    return [get_subscription_plan(key) for key in SUBSCRIPTION_PLANS]


def get_purchase_item(item_key: str) -> Optional[Dict[str, Any]]:
    """A credit pack or a subscription plan, normalized to one purchasable shape."""
    plan = get_subscription_plan(item_key)
    if plan is not None:
        return plan
    pack = get_pack(item_key)
    if pack is None:
        return None
    return {**pack, "subscription_tier": "none", "subscription_days": 0}
