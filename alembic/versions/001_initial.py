"""Bank statements and reconciliation

Creates:
- bank_accounts, bank_statements, bank_statement_lines
- reconcile_models with their write-off lines and partner mappings
- partial_reconciles, full_reconciles
- open_documents (invoice / payment projection)
- bank_import_history

Revision ID: 001_initial
Revises:
Create Date: 2024-01-15 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum labels are the Python member names, as SQLAlchemy stores them
ENUMS = {
    'ruletype': ('WRITEOFF_BUTTON', 'WRITEOFF_SUGGESTION', 'INVOICE_MATCHING'),
    'matchingorder': ('OLD_FIRST', 'NEW_FIRST'),
    'matchnature': ('AMOUNT_RECEIVED', 'AMOUNT_PAID', 'BOTH'),
    'amountcondition': ('LOWER', 'GREATER', 'BETWEEN'),
    'textcondition_label': ('CONTAINS', 'NOT_CONTAINS', 'MATCH_REGEX'),
    'textcondition_note': ('CONTAINS', 'NOT_CONTAINS', 'MATCH_REGEX'),
    'tolerancetype': ('PERCENTAGE', 'FIXED_AMOUNT'),
    'amounttype': ('FIXED', 'PERCENTAGE', 'PERCENTAGE_ST_LINE', 'REGEX'),
    'reconciletype': ('INVOICE', 'PAYMENT', 'MANUAL'),
    'importstatus': ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED'),
    'documenttype': ('INVOICE', 'PAYMENT'),
    'documentstatus': ('OPEN', 'PARTIAL', 'PAID'),
}


def enum_column(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({labels})")

    # Create bank_accounts table
    op.create_table(
        'bank_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('account_number', sa.String(64), nullable=True),
        sa.Column('iban', sa.String(34), nullable=True),
        sa.Column('bank_name', sa.String(120), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('current_balance', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('last_statement_balance', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('last_statement_date', sa.Date(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create bank_statements table
    op.create_table(
        'bank_statements',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('reference', sa.String(120), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('balance_start', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('balance_end', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('balance_end_real', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('is_complete', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('problem_description', sa.Text(), nullable=True),
        sa.Column('first_line_index', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bank_statements_bank_account_id', 'bank_statements', ['bank_account_id'])
    op.create_index('ix_bank_statements_first_line_index', 'bank_statements', ['first_line_index'])

    # Create bank_statement_lines table
    op.create_table(
        'bank_statement_lines',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('statement_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('payment_ref', sa.Text(), nullable=True),
        sa.Column('partner_name', sa.String(255), nullable=True),
        sa.Column('partner_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('account_number', sa.String(64), nullable=True),
        sa.Column('transaction_type', sa.String(64), nullable=True),
        sa.Column('ref', sa.String(255), nullable=True),
        sa.Column('narration', sa.Text(), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('internal_index', sa.String(64), nullable=True),
        sa.Column('running_balance', sa.Numeric(15, 2), nullable=True),
        sa.Column('amount_residual', sa.Numeric(15, 2), nullable=True),
        sa.Column('is_reconciled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('checked', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('import_hash', sa.String(64), nullable=True),  # SHA256 hash
        sa.Column('transaction_details', postgresql.JSONB(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['statement_id'], ['bank_statements.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bank_statement_lines_bank_account_id', 'bank_statement_lines', ['bank_account_id'])
    op.create_index('ix_bank_statement_lines_statement_id', 'bank_statement_lines', ['statement_id'])
    op.create_index('ix_bank_statement_lines_internal_index', 'bank_statement_lines', ['internal_index'])
    op.create_index('ix_bank_statement_lines_import_hash', 'bank_statement_lines', ['import_hash'])

    # Create reconcile_models table
    op.create_table(
        'reconcile_models',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('rule_type', enum_column('ruletype'), nullable=False, server_default='WRITEOFF_BUTTON'),
        sa.Column('auto_reconcile', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('to_check', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('matching_order', enum_column('matchingorder'), nullable=False, server_default='OLD_FIRST'),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('match_text_location_label', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('match_text_location_note', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('match_text_location_reference', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('match_nature', enum_column('matchnature'), nullable=False, server_default='BOTH'),
        sa.Column('match_amount', enum_column('amountcondition'), nullable=True),
        sa.Column('match_amount_min', sa.Numeric(15, 2), nullable=True),
        sa.Column('match_amount_max', sa.Numeric(15, 2), nullable=True),
        sa.Column('match_label', enum_column('textcondition_label'), nullable=True),
        sa.Column('match_label_param', sa.String(255), nullable=True),
        sa.Column('match_note', enum_column('textcondition_note'), nullable=True),
        sa.Column('match_note_param', sa.String(255), nullable=True),
        sa.Column('match_same_currency', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('match_partner', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('allow_payment_tolerance', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('payment_tolerance_param', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('payment_tolerance_type', enum_column('tolerancetype'), nullable=False, server_default='PERCENTAGE'),
        sa.Column('past_months_limit', sa.Integer(), nullable=False, server_default='18'),
        sa.Column('decimal_separator', sa.String(1), nullable=False, server_default='.'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'reconcile_model_lines',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reconcile_model_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('account_code', sa.String(20), nullable=True),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('amount_type', enum_column('amounttype'), nullable=False, server_default='PERCENTAGE'),
        sa.Column('amount_string', sa.String(255), nullable=False, server_default='100'),
        sa.ForeignKeyConstraint(['reconcile_model_id'], ['reconcile_models.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'reconcile_model_partner_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reconcile_model_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('partner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payment_ref_regex', sa.String(255), nullable=True),
        sa.Column('narration_regex', sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(['reconcile_model_id'], ['reconcile_models.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create reconciliation tables
    op.create_table(
        'full_reconciles',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'partial_reconciles',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_statement_line_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reconcile_type', enum_column('reconciletype'), nullable=False),
        sa.Column('reconcile_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('reconcile_model_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('max_date', sa.Date(), nullable=False),
        sa.Column('full_reconcile_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['bank_statement_line_id'], ['bank_statement_lines.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['full_reconcile_id'], ['full_reconciles.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_partial_reconciles_bank_statement_line_id', 'partial_reconciles', ['bank_statement_line_id'])

    # Create open_documents table
    op.create_table(
        'open_documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('document_type', enum_column('documenttype'), nullable=False),
        sa.Column('partner_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('partner_name', sa.String(255), nullable=True),
        sa.Column('number', sa.String(100), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('document_date', sa.Date(), nullable=False),
        sa.Column('amount_total', sa.Numeric(15, 2), nullable=False),
        sa.Column('amount_residual', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('status', enum_column('documentstatus'), nullable=False, server_default='OPEN'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_open_documents_partner_id', 'open_documents', ['partner_id'])

    # Create bank_import_history table
    op.create_table(
        'bank_import_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('format', sa.String(20), nullable=False),
        sa.Column('status', enum_column('importstatus'), nullable=False, server_default='PENDING'),
        sa.Column('transactions_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transactions_imported', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transactions_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('statement_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    op.drop_table('bank_import_history')

    op.drop_index('ix_open_documents_partner_id', 'open_documents')
    op.drop_table('open_documents')

    op.drop_index('ix_partial_reconciles_bank_statement_line_id', 'partial_reconciles')
    op.drop_table('partial_reconciles')
    op.drop_table('full_reconciles')

    op.drop_table('reconcile_model_partner_mappings')
    op.drop_table('reconcile_model_lines')
    op.drop_table('reconcile_models')

    op.drop_index('ix_bank_statement_lines_import_hash', 'bank_statement_lines')
    op.drop_index('ix_bank_statement_lines_internal_index', 'bank_statement_lines')
    op.drop_index('ix_bank_statement_lines_statement_id', 'bank_statement_lines')
    op.drop_index('ix_bank_statement_lines_bank_account_id', 'bank_statement_lines')
    op.drop_table('bank_statement_lines')

    op.drop_index('ix_bank_statements_first_line_index', 'bank_statements')
    op.drop_index('ix_bank_statements_bank_account_id', 'bank_statements')
    op.drop_table('bank_statements')

    op.drop_table('bank_accounts')

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE {name}")
