"""agri-vet retail schema

Revision ID: 20250601_0001
Revises:
Create Date: 2025-06-01

"""
import os

from alembic import op

# revision identifiers, used by Alembic.
revision = '20250601_0001'
down_revision = None
branch_labels = None
depends_on = None

SCHEMA_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'db', 'schema.sql'))

# Reverse dependency order
TABLES = (
    'promotion_usage', 'promotion_products', 'promotion_branches', 'promotions',
    'order_items', 'orders', 'customers', 'inventory', 'product_variants',
    'products', 'categories', 'branch_operating_hours', 'branches', 'staff',
)


def upgrade():
    # schema.sql has IF NOT EXISTS guards and no semicolons inside statements
    with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
        sql = f.read()
    for stmt in [s.strip() for s in sql.split(';') if s.strip()]:
        op.execute(stmt)


def downgrade():
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
