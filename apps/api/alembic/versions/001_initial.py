"""initial

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # symbols
    op.create_table('symbols',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('sector', sa.String(), nullable=True),
        sa.Column('industry', sa.String(), nullable=True),
        sa.Column('market_cap', sa.Float(), nullable=True),
        sa.Column('beta', sa.Float(), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('volume', sa.Float(), nullable=True),
        sa.Column('exchange', sa.String(), nullable=True),
        sa.Column('exchange_short_name', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('is_etf', sa.Boolean(), nullable=True),
        sa.Column('is_fund', sa.Boolean(), nullable=True),
        sa.Column('is_actively_trading', sa.Boolean(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('symbol')
    )
    op.create_index(op.f('ix_symbols_symbol'), 'symbols', ['symbol'], unique=False)

    # daily_prices
    op.create_table('daily_prices',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('open', sa.Float(), nullable=True),
        sa.Column('high', sa.Float(), nullable=True),
        sa.Column('low', sa.Float(), nullable=True),
        sa.Column('close', sa.Float(), nullable=True),
        sa.Column('adj_close', sa.Float(), nullable=True),
        sa.Column('volume', sa.Float(), nullable=True),
        sa.Column('rs_score', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'date')
    )
    op.create_index('ix_daily_prices_date', 'daily_prices', ['date'], unique=False)

    # daily_ma
    op.create_table('daily_ma',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('ma20', sa.Float(), nullable=True),
        sa.Column('ma50', sa.Float(), nullable=True),
        sa.Column('ma100', sa.Float(), nullable=True),
        sa.Column('ma200', sa.Float(), nullable=True),
        sa.Column('vol_ma30', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'date')
    )
    op.create_index('ix_daily_ma_date', 'daily_ma', ['date'], unique=False)

    # daily_breakout_signals
    op.create_table('daily_breakout_signals',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('is_confirmed_breakout', sa.Boolean(), nullable=False),
        sa.Column('breakout_percent', sa.Float(), nullable=True),
        sa.Column('volume_ratio', sa.Float(), nullable=True),
        sa.Column('is_perfect_retest', sa.Boolean(), nullable=False),
        sa.Column('ma20_distance_percent', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'date')
    )

    # daily_noise_signals
    op.create_table('daily_noise_signals',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('avg_dollar_volume_20d', sa.Float(), nullable=True),
        sa.Column('avg_volume_20d', sa.Float(), nullable=True),
        sa.Column('atr14', sa.Float(), nullable=True),
        sa.Column('atr14_percent', sa.Float(), nullable=True),
        sa.Column('bb_width_current', sa.Float(), nullable=True),
        sa.Column('bb_width_avg_60d', sa.Float(), nullable=True),
        sa.Column('is_vcp', sa.Boolean(), nullable=False),
        sa.Column('body_ratio', sa.Float(), nullable=True),
        sa.Column('ma20_ma50_distance_percent', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'date')
    )

    # quarterly_financials
    op.create_table('quarterly_financials',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('period_end_date', sa.Date(), nullable=False),
        sa.Column('as_of_q', sa.String(), nullable=False),
        sa.Column('revenue', sa.Float(), nullable=True),
        sa.Column('net_income', sa.Float(), nullable=True),
        sa.Column('operating_income', sa.Float(), nullable=True),
        sa.Column('eps_diluted', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'period_end_date')
    )

    # quarterly_ratios
    op.create_table('quarterly_ratios',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('period_end_date', sa.Date(), nullable=False),
        sa.Column('as_of_q', sa.String(), nullable=False),
        sa.Column('pe_ratio', sa.Float(), nullable=True),
        sa.Column('peg_ratio', sa.Float(), nullable=True),
        sa.Column('ps_ratio', sa.Float(), nullable=True),
        sa.Column('pb_ratio', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'period_end_date')
    )

    # daily_ratios
    op.create_table('daily_ratios',
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('pe_ratio', sa.Float(), nullable=True),
        sa.Column('peg_ratio', sa.Float(), nullable=True),
        sa.Column('ps_ratio', sa.Float(), nullable=True),
        sa.Column('pb_ratio', sa.Float(), nullable=True),
        sa.Column('market_cap', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['symbol'], ['symbols.symbol'], ),
        sa.PrimaryKeyConstraint('symbol', 'date')
    )


def downgrade() -> None:
    op.drop_table('daily_ratios')
    op.drop_table('quarterly_ratios')
    op.drop_table('quarterly_financials')
    op.drop_table('daily_noise_signals')
    op.drop_table('daily_breakout_signals')
    op.drop_index('ix_daily_ma_date', table_name='daily_ma')
    op.drop_table('daily_ma')
    op.drop_index('ix_daily_prices_date', table_name='daily_prices')
    op.drop_table('daily_prices')
    op.drop_index(op.f('ix_symbols_symbol'), table_name='symbols')
    op.drop_table('symbols')
