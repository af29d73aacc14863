"""create users, promo code, order and promo usage tables

Revision ID: a0c1e2f3b401
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a0c1e2f3b401'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # users テーブル (ユーザーディレクトリ)
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('role', sa.Enum('user', 'admin', name='user_role'), nullable=False),
        sa.Column('status', sa.Enum('active', 'inactive', 'pending', name='user_status'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_phone', 'users', ['phone'])
    op.create_index('ix_users_status', 'users', ['status'])

    # promo_codes テーブル
    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(50), nullable=False, comment='大文字に正規化'),
        sa.Column('discount_percent', sa.Integer(), nullable=False, comment='割引率 (1〜100)'),
        sa.Column('max_usage', sa.Integer(), nullable=False, comment='全体の使用上限'),
        sa.Column('max_usage_per_user', sa.Integer(), nullable=False, comment='ユーザー毎の使用上限'),
        sa.Column('valid_from', sa.DateTime(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('status', sa.Enum('active', 'inactive', 'expired', name='promo_code_status'), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_discount_given', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )
    op.create_index('ix_promo_codes_status', 'promo_codes', ['status'])
    op.create_index('ix_promo_codes_status_valid_until', 'promo_codes', ['status', 'valid_until'])

    # promo_code_users テーブル (コード×ユーザーの使用回数)
    op.create_table(
        'promo_code_users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('promo_code_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('promo_code_id', 'user_id', name='uq_promo_code_user'),
    )
    op.create_index('ix_promo_code_users_user_id', 'promo_code_users', ['user_id'])

    # orders テーブル
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('promo_code_id', sa.Integer(), nullable=True),
        sa.Column('discount_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('final_amount', sa.Numeric(14, 2), nullable=False, server_default='0',
                  comment='amount - discount_amount'),
        sa.Column('status', sa.Enum('pending', 'payed', 'completed', 'cancelled', 'refunded',
                                    name='order_status'), nullable=False),
        sa.Column('promo_code', sa.String(50), nullable=True),
        sa.Column('request_id', sa.String(64), nullable=True, comment='キュージョブID'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('request_id'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_promo_code_id', 'orders', ['promo_code_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_promo_created', 'orders', ['promo_code_id', 'created_at'])

    # promo_usages テーブル (使用台帳、1注文1件)
    op.create_table(
        'promo_usages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('promo_code_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('order_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('final_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('discount_percent', sa.Integer(), nullable=False),
        sa.Column('promo_code', sa.String(50), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
        sa.UniqueConstraint('promo_code_id', 'user_id', 'order_id', name='uq_promo_usage_code_user_order'),
    )
    op.create_index('ix_promo_usages_promo_code_id', 'promo_usages', ['promo_code_id'])
    op.create_index('ix_promo_usages_user_id', 'promo_usages', ['user_id'])
    op.create_index('ix_promo_usages_promo_code', 'promo_usages', ['promo_code'])
    op.create_index('ix_promo_usages_used_at', 'promo_usages', ['used_at'])
    op.create_index('ix_promo_usages_user_code', 'promo_usages', ['user_id', 'promo_code_id'])


def downgrade() -> None:
    op.drop_table('promo_usages')
    op.drop_table('orders')
    op.drop_table('promo_code_users')
    op.drop_table('promo_codes')
    op.drop_table('users')
