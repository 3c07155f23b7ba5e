import argparse
import asyncio
import sys
import os

# Add parent dir to path to find the service modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker, engine, Base
import models  # noqa: F401
from services.promo_codes import generate_promo_codes


DEFAULT_TEMPLATES = [
    {"prefix": "EARLY", "credit_amount": 50, "subscription_tier": "none", "subscription_days": 0, "count": 20,
     "notes": "Early access - 50 free credits", "max_uses": 1},
    {"prefix": "PRO30", "credit_amount": 100, "subscription_tier": "pro", "subscription_days": 30, "count": 10,
     "notes": "Pro trial - 100 credits + 30 days pro", "max_uses": 1},
    {"prefix": "VIP90", "credit_amount": 200, "subscription_tier": "pro", "subscription_days": 90, "count": 5,
     "notes": "VIP access - 200 credits + 90 days pro", "max_uses": 1},
    {"prefix": "BETA", "credit_amount": 25, "subscription_tier": "none", "subscription_days": 0, "count": 15,
     "notes": "Beta tester - 25 free credits", "max_uses": 1},
]


async def generate_async(templates):
    print("🎯 Generating promotional codes...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    summary = {}
    async with async_session_maker() as db:
        for template in templates:
            template = dict(template)
            count = template.pop("count")
            print(f"\n📝 Generating {count} codes with prefix \"{template['prefix']}\"...")
            codes = await generate_promo_codes(db, count=count, **template)
            for code in codes:
                extra = ""
                if template["subscription_tier"] != "none":
                    extra = f" + {template['subscription_days']} days {template['subscription_tier']}"
                print(f"  ✅ {code} - {template['credit_amount']} credits{extra}")
            if len(codes) < count:
                print(f"  ❌ Only {len(codes)} of {count} unique codes could be generated")
            summary[template["prefix"]] = len(codes)

    await engine.dispose()
    print(f"\n🎉 Generated {sum(summary.values())} promotional codes.")
    for prefix, created in summary.items():
        print(f"  {prefix}: {created}")


def main():
    parser = argparse.ArgumentParser(description="Generate promotional codes.")
    parser.add_argument("--prefix", help="Generate a single batch with this prefix instead of the defaults.")
    parser.add_argument("--count", type=int, default=10)
    parser.add_argument("--credits", type=int, default=0)
    parser.add_argument("--tier", default="none", choices=["none", "starter", "pro"])
    parser.add_argument("--days", type=int, default=0)
    parser.add_argument("--max-uses", type=int, default=1, help="Redemptions allowed across all accounts.")
    parser.add_argument("--notes", default=None)
    args = parser.parse_args()

    templates = DEFAULT_TEMPLATES
    if args.prefix:
        templates = [{
            "prefix": args.prefix,
            "credit_amount": args.credits,
            "subscription_tier": args.tier,
            "subscription_days": args.days,
            "max_uses": args.max_uses,
            "count": args.count,
            "notes": args.notes,
        }]
    asyncio.run(generate_async(templates))


if __name__ == "__main__":
    main()
