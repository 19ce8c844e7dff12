import json
import os
import random
import time
from datetime import time as dtime

import psycopg
from dotenv import load_dotenv
from faker import Faker

# Scale targets (can be overridden via environment variables)
TARGET_BRANCHES = int(os.getenv("SCALE_BRANCHES", 5))
TARGET_CATEGORIES = int(os.getenv("SCALE_CATEGORIES", 12))
TARGET_PRODUCTS = int(os.getenv("SCALE_PRODUCTS", 500))
VARIANTS_PER_PRODUCT = int(os.getenv("SCALE_VARIANTS_PER_PRODUCT", 3))
TARGET_CUSTOMERS = int(os.getenv("SCALE_CUSTOMERS", 500))
CHUNK_SIZE = int(os.getenv("SCALE_CHUNK_SIZE", 1000))

CATEGORY_NAMES = [
    "Animal Feeds", "Veterinary Medicines", "Vaccines", "Dewormers", "Vitamins & Supplements",
    "Fertilizers", "Seeds", "Pesticides", "Herbicides", "Farm Tools", "Pet Care", "Poultry Supplies",
]
VARIANT_SIZES = [("weight", "1kg"), ("weight", "5kg"), ("weight", "25kg"), ("volume", "100ml"), ("volume", "1L")]
DAY_HOURS = {day: ("08:00", "18:00") for day in range(1, 7)}
DAY_HOURS[0] = ("09:00", "15:00")


def chunked(iterable, size):
    for i in range(0, len(iterable), size):
        yield iterable[i : i + size]


def main():
    load_dotenv()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set in the environment")

    fake = Faker()

    start_all = time.time()
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            print("[scale] Starting seed data generation")

            def existing_count(table):
                cur.execute(f"SELECT COUNT(*) FROM {table}")
                return cur.fetchone()[0]

            # 1) Branches and their weekly hours
            t0 = time.time()
            to_insert = max(0, TARGET_BRANCHES - existing_count("branches"))
            print(f"[scale] branches will_insert={to_insert}")
            for n in range(to_insert):
                hours = {str(d): {"open": o, "close": c} for d, (o, c) in DAY_HOURS.items()}
                cur.execute(
                    """INSERT INTO branches (name, code, address, city, province, phone, email,
                                             operating_hours, branch_type)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s) RETURNING id""",
                    (
                        f"{fake.city()} Agrivet",
                        f"BR{fake.unique.random_number(digits=4, fix_len=True)}",
                        fake.street_address(),
                        fake.city(),
                        fake.state(),
                        fake.phone_number()[:50],
                        fake.company_email(),
                        json.dumps(hours),
                        "main" if n == 0 else "satellite",
                    ),
                )
                branch_id = cur.fetchone()[0]
                cur.executemany(
                    """INSERT INTO branch_operating_hours (branch_id, day_of_week, is_open, open_time, close_time)
                    VALUES (%s, %s, true, %s, %s) ON CONFLICT (branch_id, day_of_week) DO NOTHING""",
                    [
                        (branch_id, d, dtime.fromisoformat(o), dtime.fromisoformat(c))
                        for d, (o, c) in DAY_HOURS.items()
                    ],
                )
            print(f"[timing] branches phase {time.time()-t0:.2f}s")

            # 2) Categories
            t0 = time.time()
            to_insert = max(0, TARGET_CATEGORIES - existing_count("categories"))
            names = (CATEGORY_NAMES * (to_insert // len(CATEGORY_NAMES) + 1))[:to_insert]
            cur.executemany(
                "INSERT INTO categories (name, description, sort_order) VALUES (%s, %s, %s)",
                [(name, fake.sentence(nb_words=6), i) for i, name in enumerate(names)],
            )
            print(f"[timing] categories phase {time.time()-t0:.2f}s")

            cur.execute("SELECT id FROM categories ORDER BY id")
            category_ids = [r[0] for r in cur.fetchall()]

            # 3) Products with variants
            t0 = time.time()
            to_insert = max(0, TARGET_PRODUCTS - existing_count("products"))
            print(f"[scale] products will_insert={to_insert} variants_each={VARIANTS_PER_PRODUCT}")
            for batch in chunked(list(range(to_insert)), CHUNK_SIZE):
                for _ in batch:
                    sku = fake.unique.bothify(text="PRD-####-????").upper()
                    cur.execute(
                        """INSERT INTO products (sku, name, description, category_id, brand, unit_of_measure)
                        VALUES (%s, %s, %s, %s, %s, %s) RETURNING id""",
                        (
                            sku,
                            f"{fake.word().title()} {random.choice(['Feed', 'Tonic', 'Spray', 'Granules', 'Mix'])}",
                            fake.sentence(nb_words=10),
                            random.choice(category_ids),
                            fake.company()[:255],
                            "pack",
                        ),
                    )
                    product_id = cur.fetchone()[0]
                    rows = []
                    for variant_type, value in random.sample(VARIANT_SIZES, k=min(VARIANTS_PER_PRODUCT, len(VARIANT_SIZES))):
                        price = round(random.uniform(50, 5000), 2)
                        rows.append((
                            product_id, f"{sku}-{value.upper()}", f"{value}", variant_type, value,
                            price, round(price * random.uniform(0.55, 0.85), 2),
                        ))
                    cur.executemany(
                        """INSERT INTO product_variants (product_id, sku, name, variant_type, variant_value, price, cost)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)""",
                        rows,
                    )
            print(f"[timing] products phase {time.time()-t0:.2f}s")

            # 4) Inventory for every variant at every branch
            t0 = time.time()
            cur.execute("SELECT id FROM branches ORDER BY id")
            branch_ids = [r[0] for r in cur.fetchall()]
            cur.execute("SELECT id FROM product_variants ORDER BY id")
            variant_ids = [r[0] for r in cur.fetchall()]
            pairs = [(v, b) for v in variant_ids for b in branch_ids]
            for batch in chunked(pairs, CHUNK_SIZE):
                cur.executemany(
                    """INSERT INTO inventory (product_variant_id, branch_id, quantity_on_hand)
                    VALUES (%s, %s, %s) ON CONFLICT (product_variant_id, branch_id) DO NOTHING""",
                    [(v, b, random.randint(0, 300)) for v, b in batch],
                )
            print(f"[scale] inventory rows ensured={len(pairs)}")
            print(f"[timing] inventory phase {time.time()-t0:.2f}s")

            # 5) Customers
            t0 = time.time()
            to_insert = max(0, TARGET_CUSTOMERS - existing_count("customers"))
            print(f"[scale] customers will_insert={to_insert}")
            for batch in chunked(list(range(to_insert)), CHUNK_SIZE):
                cur.executemany(
                    "INSERT INTO customers (first_name, last_name, email, phone) VALUES (%s, %s, %s, %s)",
                    [
                        (fake.first_name(), fake.last_name(), fake.unique.email(), fake.phone_number()[:50])
                        for _ in batch
                    ],
                )
            print(f"[timing] customers phase {time.time()-t0:.2f}s")

        conn.commit()
    print(f"[scale] Complete in {time.time()-start_all:.2f}s")


if __name__ == "__main__":
    main()
