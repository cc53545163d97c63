"""Initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Users and tokens
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('plan_id', sa.String(length=32), server_default='basic', nullable=False),
        sa.Column('account_status', sa.String(length=16), server_default='active', nullable=False),
        sa.Column('login_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('lock_reason', sa.String(length=255), nullable=True),
        sa.Column('unlocked_at', sa.DateTime(), nullable=True),
        sa.Column('unlocked_by', sa.String(length=64), nullable=True),
        sa.Column('last_failed_login', sa.DateTime(), nullable=True),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('google_id', sa.String(length=255), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('profile_picture', sa.String(length=1024), nullable=True),
        sa.Column('email_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('login_method', sa.String(length=16), server_default='email', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('google_id'),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_status_locked_at', 'users', ['account_status', 'locked_at'])

    op.create_table('refresh_tokens',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('revoked', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refresh_tokens_username', 'refresh_tokens', ['username'])
    op.create_index('ix_refresh_tokens_token_hash', 'refresh_tokens', ['token_hash'], unique=True)
    op.create_index('ix_refresh_tokens_username_expires', 'refresh_tokens', ['username', 'expires_at'])

    # Billing
    payment_plans = op.create_table('payment_plans',
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('currency', sa.String(length=3), server_default='AZN', nullable=False),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.PrimaryKeyConstraint('plan_id'),
    )

    op.create_table('payment_orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('api_id', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=16), server_default='pending', nullable=False),
        sa.Column('payment_method', sa.String(length=32), server_default='epoint', nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('payment_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('gateway_redirect_url', sa.String(length=2048), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_payment_orders_order_id'),
    )
    op.create_index('ix_payment_orders_user_id', 'payment_orders', ['user_id'])
    op.create_index('ix_payment_orders_user_created', 'payment_orders', ['user_id', 'created_at'])

    op.create_table('user_subscriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('api_id', sa.String(length=255), nullable=True),
        sa.Column('scope_key', sa.String(length=255), server_default='global', nullable=False),
        sa.Column('status', sa.String(length=16), server_default='active', nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('expiration_date', sa.DateTime(), nullable=False),
        sa.Column('payment_order_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'scope_key', name='uq_user_subscriptions_user_scope'),
    )
    op.create_index(
        'ix_user_subscriptions_status_expiration', 'user_subscriptions', ['status', 'expiration_date']
    )

    op.create_table('usage',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('user_plan', sa.String(length=32), nullable=False),
        sa.Column('requests_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('projects_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'period_start', name='uq_usage_user_period'),
    )

    # Audit
    op.create_table('api_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=False),
        sa.Column('x_auth_user_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('endpoint', sa.String(length=2048), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('response_time_ms', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_api_request', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('api_id', sa.String(length=255), nullable=True),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_api_logs_ip_timestamp', 'api_logs', ['ip', 'timestamp'])
    op.create_index('ix_api_logs_user_timestamp', 'api_logs', ['user_id', 'timestamp'])
    op.create_index('ix_api_logs_identity_timestamp', 'api_logs', ['x_auth_user_id', 'timestamp'])

    op.create_table('security_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('method', sa.String(length=10), nullable=True),
        sa.Column('path', sa.String(length=2048), nullable=True),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('detection', sa.JSON(), nullable=False),
        sa.Column('endpoint', sa.String(length=2048), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_security_logs_ip_type_timestamp', 'security_logs', ['ip', 'type', 'timestamp'])

    op.create_table('error_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('method', sa.String(length=10), nullable=True),
        sa.Column('path', sa.String(length=2048), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('error', sa.Text(), nullable=False),
        sa.Column('stack', sa.Text(), nullable=True),
        sa.Column('status', sa.Integer(), server_default='500', nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('ip_blacklist',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=False),
        sa.Column('reason', sa.String(length=500), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(length=64), server_default='system', nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ip_blacklist_ip', 'ip_blacklist', ['ip'])

    # Default plans
    op.bulk_insert(payment_plans, [
        {
            'plan_id': 'basic', 'name': 'Basic Plan', 'price': 0, 'currency': 'USD', 'is_active': True,
            'features': ['2 Projects', '1000 requests/month', 'Email support'],
        },
        {
            'plan_id': 'pro', 'name': 'Pro Plan', 'price': 9.99, 'currency': 'USD', 'is_active': True,
            'features': ['10 Projects', '10000 requests/month', 'Priority support', 'Custom domains'],
        },
        {
            'plan_id': 'enterprise', 'name': 'Enterprise Plan', 'price': 29.99, 'currency': 'USD',
            'is_active': True,
            'features': ['Unlimited Projects', 'Unlimited requests', '24/7 support', 'Custom integrations'],
        },
    ])


def downgrade():
    op.drop_index('ix_ip_blacklist_ip', table_name='ip_blacklist')
    op.drop_table('ip_blacklist')
    op.drop_table('error_logs')
    op.drop_index('ix_security_logs_ip_type_timestamp', table_name='security_logs')
    op.drop_table('security_logs')
    op.drop_index('ix_api_logs_identity_timestamp', table_name='api_logs')
    op.drop_index('ix_api_logs_user_timestamp', table_name='api_logs')
    op.drop_index('ix_api_logs_ip_timestamp', table_name='api_logs')
    op.drop_table('api_logs')
    op.drop_table('usage')
    op.drop_index('ix_user_subscriptions_status_expiration', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
    op.drop_index('ix_payment_orders_user_created', table_name='payment_orders')
    op.drop_index('ix_payment_orders_user_id', table_name='payment_orders')
    op.drop_table('payment_orders')
    op.drop_table('payment_plans')
    op.drop_index('ix_refresh_tokens_username_expires', table_name='refresh_tokens')
    op.drop_index('ix_refresh_tokens_token_hash', table_name='refresh_tokens')
    op.drop_index('ix_refresh_tokens_username', table_name='refresh_tokens')
    op.drop_table('refresh_tokens')
    op.drop_index('ix_users_status_locked_at', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_username', table_name='users')
    op.drop_table('users')
