"""Initial registry schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates the instance registry and the scheduler tables:
- instances (partial unique index: one active instance per port)
- health_checks, backup_schedules, backup_records
- alerts, alert_channels, request_metrics
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _instance_fk() -> sa.Column:
    return sa.Column(
        'instance_id', sa.String(),
        sa.ForeignKey('instances.id', ondelete='CASCADE'),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        'instances',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('subdomain', sa.String(63), nullable=False, unique=True),
        sa.Column('status', sa.String(), nullable=False, server_default='stopped'),
        sa.Column('port', sa.Integer(), nullable=True),
        sa.Column('snapshot_key', sa.String(512), nullable=False),
        sa.Column('admin_email', sa.String(), nullable=True),
        sa.Column('admin_secret', sa.String(), nullable=True),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
        _ts('last_started_at'),
        _ts('last_stopped_at'),
        _ts('last_activity_at'),
    )
    op.create_index('ix_instances_owner_id', 'instances', ['owner_id'])
    op.create_index('idx_instances_status', 'instances', ['status'])
    # At most one active instance per port
    op.create_index(
        'uq_instances_active_port',
        'instances',
        ['port'],
        unique=True,
        postgresql_where="status IN ('starting', 'running')",
    )

    op.create_table(
        'health_checks',
        sa.Column('id', sa.String(), primary_key=True),
        _instance_fk(),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        _ts('checked_at', nullable=False),
    )
    op.create_index('ix_health_checks_instance_id', 'health_checks', ['instance_id'])
    op.create_index('ix_health_checks_checked_at', 'health_checks', ['checked_at'])

    op.create_table(
        'backup_schedules',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column(
            'instance_id', sa.String(),
            sa.ForeignKey('instances.id', ondelete='CASCADE'),
            nullable=False, unique=True,
        ),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('interval_hours', sa.Integer(), nullable=False, server_default='6'),
        sa.Column('retention_days', sa.Integer(), nullable=False, server_default='30'),
        _ts('last_backup_at'),
        _ts('next_backup_at'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
    )
    op.create_index('ix_backup_schedules_next_backup_at', 'backup_schedules', ['next_backup_at'])

    op.create_table(
        'backup_records',
        sa.Column('id', sa.String(), primary_key=True),
        _instance_fk(),
        sa.Column('backup_name', sa.String(), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error_message', sa.String(), nullable=True),
        _ts('created_at', nullable=False),
    )
    op.create_index('ix_backup_records_instance_id', 'backup_records', ['instance_id'])
    op.create_index('ix_backup_records_created_at', 'backup_records', ['created_at'])

    op.create_table(
        'alerts',
        sa.Column('id', sa.String(), primary_key=True),
        _instance_fk(),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('resolved_at'),
        _ts('created_at', nullable=False),
    )
    op.create_index('ix_alerts_instance_id', 'alerts', ['instance_id'])
    op.create_index('idx_alerts_open', 'alerts', ['instance_id', 'type', 'resolved'])

    op.create_table(
        'alert_channels',
        sa.Column('id', sa.String(), primary_key=True),
        _instance_fk(),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('config', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at', nullable=False),
    )
    op.create_index('ix_alert_channels_instance_id', 'alert_channels', ['instance_id'])

    op.create_table(
        'request_metrics',
        sa.Column('id', sa.String(), primary_key=True),
        _instance_fk(),
        sa.Column('method', sa.String(10), nullable=False),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        _ts('created_at', nullable=False),
    )
    op.create_index('ix_request_metrics_instance_id', 'request_metrics', ['instance_id'])
    op.create_index('ix_request_metrics_created_at', 'request_metrics', ['created_at'])


def downgrade() -> None:
    op.drop_table('request_metrics')
    op.drop_table('alert_channels')
    op.drop_table('alerts')
    op.drop_table('backup_records')
    op.drop_table('backup_schedules')
    op.drop_table('health_checks')
    op.drop_index('uq_instances_active_port', table_name='instances')
    op.drop_index('idx_instances_status', table_name='instances')
    op.drop_index('ix_instances_owner_id', table_name='instances')
    op.drop_table('instances')
