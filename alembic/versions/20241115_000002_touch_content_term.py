"""Add utm_content / utm_term to touches and attribution snapshots.

Revision ID: 20241115_000002
Revises: 20241101_000001
Create Date: 2024-11-15 09:00:00.000000

WHAT:
    Adds nullable `content` and `term` to touches, and the matching
    snapshot columns on visitor_identities (first touch) and purchases
    (first and last touch).

WHY:
    Creators split ad creatives by utm_content and search keywords by
    utm_term; both are carried through to purchase attribution.

REFERENCES:
    - coursesignal/models.py
    - coursesignal/services/attribution_calculator.py (TouchSnapshot)
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20241115_000002'
down_revision = '20241101_000001'
branch_labels = None
depends_on = None


COLUMNS = {
    'touches': ('content', 'term'),
    'visitor_identities': ('first_touch_content', 'first_touch_term'),
    'purchases': (
        'first_touch_content',
        'first_touch_term',
        'last_touch_content',
        'last_touch_term',
    ),
}


def upgrade() -> None:
    for table, columns in COLUMNS.items():
        for column in columns:
            op.add_column(table, sa.Column(column, sa.String(255), nullable=True))


def downgrade() -> None:
    for table, columns in COLUMNS.items():
        for column in reversed(columns):
            op.drop_column(table, column)
