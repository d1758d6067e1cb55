"""
Chaos Simulation Script

Fires concurrent orders at one tenant to exercise the daily order number
counter and the inventory ledger under contention, then verifies:
    - every accepted order got a distinct number
    - no stock level went negative
    - accepted + rejected-for-stock orders add up

Run from project root against a running API (same DATABASE_URL):
    python scripts/simulate.py --seed
    python scripts/simulate.py --orders 100
"""

import argparse
import asyncio
import os
import random
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50
TENANT_ID = "sim-truck"
LOCATION_ID = "bahnhofplatz"

FIRST_NAMES = ["Anna", "Luca", "Mia", "Noah", "Lea", "Elias", "Lina", "Leon", "Sara", "Jan"]
LAST_NAMES = ["Müller", "Meier", "Schmid", "Keller", "Weber", "Huber", "Frei", "Baumann"]
MENU = [
    # product_id, name, price (Rappen), opening stock
    ("burger-classic", "Classic Burger", 1450, 40),
    ("burger-veggie", "Veggie Burger", 1390, 20),
    ("fries", "Pommes Frites", 650, 80),
    ("lemonade", "Homemade Lemonade", 450, 30),
]


def generate_random_customer() -> dict[str, str]:
    return {
        "name": f"{random.choice(FIRST_NAMES)} {random.choice(LAST_NAMES)}",
        "phone": f"+4179{random.randint(1000000, 9999999)}",
    }


def generate_random_items() -> list[dict]:
    picks = random.sample(MENU, k=random.randint(1, 3))
    return [{"product_id": p[0], "quantity": random.randint(1, 3)} for p in picks]


# =============================================================================
# SEEDING
# =============================================================================

async def seed() -> None:
    """Create the simulation tenant, its menu and opening stock in-process."""
    from fulfillment.database import init_db
    from fulfillment.services import get_fulfillment

    await init_db()
    services = get_fulfillment()
    await services.tenants.register_tenant(TENANT_ID, "Simulation Truck", announced_location_id=LOCATION_ID)
    await services.tenants.add_location(TENANT_ID, LOCATION_ID, "Bahnhofplatz")
    for product_id, name, price, stock in MENU:
        await services.catalog.upsert_product(TENANT_ID, product_id, name, price)
        await services.inventory.initialize_item(TENANT_ID, product_id, stock, name=name, reorder_point=5)
    print(f"✅ Seeded tenant {TENANT_ID} with {len(MENU)} products")


# =============================================================================
# ORDER FLOOD
# =============================================================================

async def send_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    payload = {
        "items": generate_random_items(),
        "customer": generate_random_customer(),
        "payment_method": random.choice(["card", "cash"]),
        "tip": random.choice([0, 0, 100, 200]),
    }
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/tenants/{TENANT_ID}/orders",
            json=payload,
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        return {"order_num": order_num, "success": False, "error": str(e)[:100], "time": 0.0}

    elapsed = round(time.time() - start_time, 3)
    data = response.json()
    if response.status_code == 201:
        order = data["order"]
        return {
            "order_num": order_num,
            "success": True,
            "number": order["order_number"],
            "total": order["total"],
            "time": elapsed,
        }
    return {
        "order_num": order_num,
        "success": False,
        "error": data.get("error", response.text[:100]),
        "retryable": data.get("retryable", False),
        "time": elapsed,
    }


async def verify(client: httpx.AsyncClient, results: list[dict]) -> bool:
    ok = True
    numbers = [r["number"] for r in results if r["success"]]
    duplicates = [n for n, c in Counter(numbers).items() if c > 1]
    if duplicates:
        print(f"❌ Duplicate order numbers: {duplicates}")
        ok = False
    else:
        print(f"✅ {len(numbers)} distinct order numbers")

    for product_id, *_ in MENU:
        response = await client.get(f"{API_BASE_URL}/api/tenants/{TENANT_ID}/inventory/{product_id}")
        item = response.json()
        if item["quantity"] < 0:
            print(f"❌ {product_id} went negative: {item['quantity']}")
            ok = False
        else:
            print(f"   {product_id}: {item['quantity']} left ({item['level']})")
    return ok


async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL} (tenant {TENANT_ID})")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        results = await asyncio.gather(*[send_order(client, i + 1) for i in range(num_orders)])
        total_time = round(time.time() - start_time, 2)

        successful = [r for r in results if r["success"]]
        failed = [r for r in results if not r["success"]]
        reasons = Counter(r["error"] for r in failed)

        print("\n" + "=" * 70)
        print("📊 SIMULATION RESULTS")
        print("=" * 70)
        print(f"\n✅ Accepted: {len(successful)}/{num_orders}")
        print(f"❌ Rejected: {len(failed)}/{num_orders}")
        for reason, count in reasons.most_common():
            print(f"   {reason}: {count}")
        print(f"⏱️  Total Time: {total_time}s")

        if successful:
            avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
            revenue = sum(r["total"] for r in successful) / 100
            print(f"\n📈 Average Response: {avg_time}s")
            print(f"   💰 Total Revenue: CHF {revenue:.2f}")

        print("\n" + "=" * 70)
        print("🔍 VERIFICATION")
        print("=" * 70)
        ok = await verify(client, results)

    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "verified": ok,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--seed", action="store_true", help="Seed the simulation tenant and exit")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    args = parser.parse_args()

    if args.seed:
        asyncio.run(seed())
        sys.exit(0)

    summary = asyncio.run(run_simulation(args.orders))
    sys.exit(0 if summary["verified"] else 1)
