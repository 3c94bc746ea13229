"""Create data table

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'data',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_id', sa.String(), nullable=True),
        sa.Column('resource_json', sa.Text(), nullable=False),
        sa.Column('fhir_type', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('modified_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_data_patient_id'), 'data', ['patient_id'], unique=False)
    op.create_index('ix_data_fhir_type_group', 'data', ['fhir_type', 'group_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_data_fhir_type_group', table_name='data')
    op.drop_index(op.f('ix_data_patient_id'), table_name='data')
    op.drop_table('data')
