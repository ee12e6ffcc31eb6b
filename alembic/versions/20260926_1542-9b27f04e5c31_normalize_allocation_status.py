"""normalize_allocation_status

Revision ID: 9b27f04e5c31
Revises: 4c1e8b2a7d10
Create Date: 2026-09-26 15:42:37.918004

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '9b27f04e5c31'
down_revision: Union[str, None] = '4c1e8b2a7d10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 历史数据以 PENDING 表示待付款，统一为 HELD
    op.execute("UPDATE supplier_payment_allocations SET status = 'HELD' WHERE status = 'PENDING'")
    op.execute("UPDATE purchase_orders SET payout_status = 'HELD' WHERE payout_status = 'PENDING'")


def downgrade() -> None:
    # HELD 与 PENDING 语义相同，无需回滚
    pass
