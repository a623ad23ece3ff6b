"""Initial tables: catalog, units, location history, pallets, memberships.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa

DELETED_ACTOR_ID = "00000000-0000-0000-0000-000000000000"

LOCATIONS = [
    (1, "Processed", "intake"),
    (2, "In Debug - Wistron", "debug"),
    (3, "Pending Parts", "pending"),
    (4, "In Debug - Nvidia", "debug"),
    (5, "In L10", "l10"),
    (6, "RMA VID", "rma"),
    (7, "RMA PID", "rma"),
    (8, "RMA CID", "rma"),
    (9, "Sent to L11", "shipped"),
]


def upgrade() -> None:
    users = op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255)),
        sa.Column("is_admin", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_users_username", "users", ["username"])

    op.create_table(
        "factories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(10), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("ppid_code", sa.String(5), unique=True),
    )
    op.create_table(
        "part_numbers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(20), nullable=False, unique=True),
    )
    locations = op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        # Stored as the enum member name (SQLAlchemy non-native Enum)
        sa.Column("category", sa.String(20), nullable=False),
    )

    op.create_table(
        "units",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("service_tag", sa.String(50), nullable=False, unique=True),
        sa.Column("issue", sa.Text()),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id"), nullable=False),
        sa.Column("ppid", sa.String(40), unique=True),
        sa.Column("factory_id", sa.Integer(), sa.ForeignKey("factories.id")),
        sa.Column("part_number_id", sa.Integer(), sa.ForeignKey("part_numbers.id")),
        sa.Column("manufactured_date", sa.Date()),
        sa.Column("serial", sa.String(10)),
        sa.Column("rev", sa.String(10)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_units_service_tag", "units", ["service_tag"])
    op.create_index("ix_units_location_id", "units", ["location_id"])
    op.create_index("ix_units_factory_id", "units", ["factory_id"])
    op.create_index("ix_units_part_number_id", "units", ["part_number_id"])

    op.create_table(
        "unit_location_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("unit_id", sa.String(36), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("from_location_id", sa.Integer(), sa.ForeignKey("locations.id")),
        sa.Column("to_location_id", sa.Integer(), sa.ForeignKey("locations.id"), nullable=False),
        sa.Column("moved_by", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("changed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_unit_location_history_unit_changed",
        "unit_location_history", ["unit_id", "changed_at"],
    )
    op.create_index(
        "ix_unit_location_history_to_location_id",
        "unit_location_history", ["to_location_id"],
    )
    op.create_index(
        "ix_unit_location_history_changed_at",
        "unit_location_history", ["changed_at"],
    )

    op.create_table(
        "pallets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pallet_number", sa.String(60), nullable=False, unique=True),
        sa.Column("factory_id", sa.Integer(), sa.ForeignKey("factories.id"), nullable=False),
        sa.Column("part_number_id", sa.Integer(), sa.ForeignKey("part_numbers.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("locked_at", sa.DateTime()),
        sa.Column("locked_by", sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("doa_number", sa.String(100)),
        sa.Column("released_at", sa.DateTime()),
        sa.Column("shape", sa.String(30)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint(
            "(locked_at IS NULL) = (locked_by IS NULL)",
            name="ck_pallets_lock_pair",
        ),
        sa.CheckConstraint(
            "(status = 'open' AND doa_number IS NULL AND released_at IS NULL)"
            " OR (status = 'released' AND doa_number IS NOT NULL"
            " AND released_at IS NOT NULL AND locked_at IS NULL)",
            name="ck_pallets_status_fields",
        ),
    )
    op.create_index("ix_pallets_pallet_number", "pallets", ["pallet_number"])
    op.create_index("ix_pallets_status", "pallets", ["status"])
    op.create_index("ix_pallets_released_at", "pallets", ["released_at"])
    op.create_index(
        "ix_pallets_scope_created", "pallets",
        ["factory_id", "part_number_id", "created_at"],
    )

    op.create_table(
        "pallet_memberships",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "pallet_id", sa.String(36),
            sa.ForeignKey("pallets.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("unit_id", sa.String(36), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("added_at", sa.DateTime(), nullable=False),
        sa.Column("removed_at", sa.DateTime()),
    )
    op.create_index("ix_pallet_memberships_unit_id", "pallet_memberships", ["unit_id"])
    op.create_index(
        "ix_pallet_memberships_pallet_interval", "pallet_memberships",
        ["pallet_id", "added_at", "removed_at"],
    )
    # At most one open membership per unit, across all pallets
    op.create_index(
        "uq_pallet_memberships_open_unit", "pallet_memberships", ["unit_id"],
        unique=True, postgresql_where=sa.text("removed_at IS NULL"),
    )

    op.create_table(
        "pallet_sequences",
        sa.Column("factory_id", sa.Integer(), sa.ForeignKey("factories.id"), primary_key=True),
        sa.Column("part_number_id", sa.Integer(), sa.ForeignKey("part_numbers.id"), primary_key=True),
        sa.Column("day", sa.Date(), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(36)),
        sa.Column("entity_code", sa.String(100)),
        sa.Column("summary", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_user_id", "activity_logs", ["user_id"])
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_type", "activity_logs", ["entity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])

    # ── Seed ─────────────────────────────────────────────────
    op.bulk_insert(
        locations,
        [
            {"id": loc_id, "name": name, "category": category.upper()}
            for loc_id, name, category in LOCATIONS
        ],
    )
    op.bulk_insert(
        users,
        [{
            "id": DELETED_ACTOR_ID,
            "username": "deleted_user@example.com",
            "full_name": "Deleted user",
            "is_admin": False,
            "is_active": False,
        }],
    )


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("pallet_sequences")
    op.drop_table("pallet_memberships")
    op.drop_table("pallets")
    op.drop_table("unit_location_history")
    op.drop_table("units")
    op.drop_table("locations")
    op.drop_table("part_numbers")
    op.drop_table("factories")
    op.drop_table("users")
