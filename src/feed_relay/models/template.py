"""SQLAlchemy model for message templates."""

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from feed_relay.db.session import Base


class MessageTemplate(Base):
    """Message body with ``{{ field }}`` placeholders filled from a content item."""

    __tablename__ = "message_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
