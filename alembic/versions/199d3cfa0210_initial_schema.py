"""initial_schema

Revision ID: 199d3cfa0210
Revises:
Create Date: 2026-10-18 10:12:31.402117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '199d3cfa0210'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

REQUEST_STATUS = sa.Enum(
    "OPEN", "HAS_RESPONSES", "MATCHED", "MATCHED_MANUALLY", "COMPLETED", "CLOSED", name="requeststatus"
)
PARTY_STATUS = sa.Enum("PENDING", "ACCEPTED", "REJECTED", name="partystatus")
RESPONSE_STATUS = sa.Enum("PENDING", "PARTIAL", "ACCEPTED", "REJECTED", "CLOSED", name="responsestatus")
RESPONSE_TYPE = sa.Enum("MATCHING", "MANUAL", name="responsetype")
OFFER_TYPE = sa.Enum("SEND", "DELIVERY", name="offertype")
CHAT_STATUS = sa.Enum("ACTIVE", "INACTIVE", "CLOSED", name="chatstatus")


def _request_table(name: str, matched_column: str):
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("from_location_id", sa.Integer(), nullable=False),
        sa.Column("to_location_id", sa.Integer(), nullable=False),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        sa.Column("size_type", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("status", REQUEST_STATUS, nullable=False, server_default="OPEN"),
        sa.Column(matched_column, sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("user_id", "from_location_id", "to_location_id", "status"):
        op.create_index(f"ix_{name}_{column}", name, [column])


def upgrade() -> None:
    """Create tables: user, deliveryrequest, sendrequest, chat, response, roundrobincursor."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _request_table("deliveryrequest", "matched_send_id")
    _request_table("sendrequest", "matched_delivery_id")
    op.create_table(
        "chat",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("receiver_id", sa.Integer(), nullable=False),
        sa.Column("send_request_id", sa.Integer(), nullable=True),
        sa.Column("delivery_request_id", sa.Integer(), nullable=True),
        sa.Column("status", CHAT_STATUS, nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["sender_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["receiver_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chat_sender_id", "chat", ["sender_id"])
    op.create_index("ix_chat_receiver_id", "chat", ["receiver_id"])
    op.create_table(
        "response",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("deliverer_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("offer_type", OFFER_TYPE, nullable=False, server_default="SEND"),
        sa.Column("delivery_request_id", sa.Integer(), nullable=False),
        sa.Column("send_request_id", sa.Integer(), nullable=False),
        sa.Column("response_type", RESPONSE_TYPE, nullable=False, server_default="MATCHING"),
        sa.Column("deliverer_status", PARTY_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("sender_status", PARTY_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("overall_status", RESPONSE_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("chat_id", sa.Integer(), nullable=True),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("auto_rejected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["deliverer_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["sender_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["delivery_request_id"], ["deliveryrequest.id"]),
        sa.ForeignKeyConstraint(["send_request_id"], ["sendrequest.id"]),
        sa.ForeignKeyConstraint(["chat_id"], ["chat.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deliverer_id", "sender_id", "offer_type", "delivery_request_id", "send_request_id",
            name="uq_response_pairing",
        ),
    )
    for column in ("deliverer_id", "sender_id", "delivery_request_id", "send_request_id",
                   "response_type", "overall_status", "created_at"):
        op.create_index(f"ix_response_{column}", "response", [column])
    op.create_table(
        "roundrobincursor",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("roundrobincursor")
    for column in ("deliverer_id", "sender_id", "delivery_request_id", "send_request_id",
                   "response_type", "overall_status", "created_at"):
        op.drop_index(f"ix_response_{column}", table_name="response")
    op.drop_table("response")
    op.drop_index("ix_chat_receiver_id", table_name="chat")
    op.drop_index("ix_chat_sender_id", table_name="chat")
    op.drop_table("chat")
    for name in ("sendrequest", "deliveryrequest"):
        for column in ("user_id", "from_location_id", "to_location_id", "status"):
            op.drop_index(f"ix_{name}_{column}", table_name=name)
        op.drop_table(name)
    op.drop_table("user")
