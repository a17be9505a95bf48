"""Initial schema - all tables.

Revision ID: v001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the scheduler tables from scratch.  Runs against both SQLite (dev)
and PostgreSQL (production) without changes.

To apply:
    cd backend/
    alembic upgrade head
"""
from __future__ import annotations
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "v001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── workflows ───────────────────────────────────────────────────────────
    op.create_table(
        "workflows",
        sa.Column("workflow_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("graph_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workflows_user_id", "workflows", ["user_id"])

    # ── executions ──────────────────────────────────────────────────────────
    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("workflow_id", sa.String(64), nullable=True),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("iteration", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_iterations", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("edges_json", sa.Text(), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_executions_user_id", "executions", ["user_id"])
    op.create_index("ix_executions_workflow_id", "executions", ["workflow_id"])
    op.create_index("ix_executions_batch_id", "executions", ["batch_id"])
    op.create_index("ix_executions_batch_iteration", "executions", ["batch_id", "iteration"])

    # ── node_tasks ──────────────────────────────────────────────────────────
    op.create_table(
        "node_tasks",
        sa.Column("task_id", sa.String(64), primary_key=True),
        sa.Column(
            "execution_id",
            sa.String(64),
            sa.ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("node_id", sa.String(256), nullable=False),
        sa.Column("node_type", sa.String(128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("external_task_id", sa.String(256), nullable=True),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("credential_ciphertext", sa.Text(), nullable=True),
        sa.Column("credential_hash", sa.String(64), nullable=True),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("charged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_node_tasks_execution_id", "node_tasks", ["execution_id"])
    op.create_index("ix_node_tasks_external_task_id", "node_tasks", ["external_task_id"])

    # ── flow_executions ─────────────────────────────────────────────────────
    op.create_table(
        "flow_executions",
        sa.Column("flow_execution_id", sa.String(64), primary_key=True),
        sa.Column(
            "execution_id",
            sa.String(64),
            sa.ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("flow_id", sa.String(256), nullable=False),
        sa.Column("flow_name", sa.String(256), nullable=True),
        sa.Column("entry_node_id", sa.String(256), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="running"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_flow_executions_execution_id", "flow_executions", ["execution_id"])

    # ── admission_slots ─────────────────────────────────────────────────────
    op.create_table(
        "admission_slots",
        sa.Column("slot_id", sa.String(64), primary_key=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("credential_hash", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(256), nullable=False),
        sa.Column("execution_id", sa.String(64), nullable=True),
        sa.Column("node_id", sa.String(256), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "external_id", name="uq_admission_slot_external"),
    )
    op.create_index("ix_admission_slots_scope", "admission_slots", ["provider", "credential_hash"])
    op.create_index("ix_admission_slots_expires_at", "admission_slots", ["expires_at"])

    # ── admission_queue ─────────────────────────────────────────────────────
    op.create_table(
        "admission_queue",
        sa.Column("queue_id", sa.String(64), primary_key=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("credential_hash", sa.String(64), nullable=False),
        sa.Column("execution_id", sa.String(64), nullable=True),
        sa.Column("task_id", sa.String(64), nullable=True),
        sa.Column("node_id", sa.String(256), nullable=False, server_default=""),
        sa.Column("node_type", sa.String(128), nullable=False),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_admission_queue_scope", "admission_queue", ["provider", "credential_hash", "status"])
    op.create_index("ix_admission_queue_execution_id", "admission_queue", ["execution_id"])
    op.create_index("ix_admission_queue_task_id", "admission_queue", ["task_id"])

    # ── work_items ──────────────────────────────────────────────────────────
    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("item_type", sa.String(64), nullable=False),
        sa.Column("task_id", sa.String(64), nullable=False),
        sa.Column("execution_id", sa.String(64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(128), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_work_items_claim", "work_items", ["status", "available_at"])
    op.create_index("ix_work_items_task_id", "work_items", ["task_id"])
    op.create_index("ix_work_items_execution_id", "work_items", ["execution_id"])

    # ── webhook_logs ────────────────────────────────────────────────────────
    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(256), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False, server_default=""),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outcome", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_logs_external_id", "webhook_logs", ["external_id"])
    op.create_index("ix_webhook_logs_created_at", "webhook_logs", ["created_at"])

    # ── credit_ledger / credit_transactions ─────────────────────────────────
    op.create_table(
        "credit_ledger",
        sa.Column("entry_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("remaining", sa.Float(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="topup"),
        sa.Column("reference_id", sa.String(256), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.String(256), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])


def downgrade() -> None:
    for table in (
        "credit_transactions",
        "credit_ledger",
        "webhook_logs",
        "work_items",
        "admission_queue",
        "admission_slots",
        "flow_executions",
        "node_tasks",
        "executions",
        "workflows",
    ):
        op.drop_table(table)
