import uuid

from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    String,
    Numeric,
    Boolean,
    Integer,
    TIMESTAMP,
    Text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


# =========================
# User (tenant)
# =========================
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)

    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    categories = relationship(
        "Category",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    entries = relationship(
        "Entry",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Category
# =========================
class Category(Base):
    """
    Income or expense bucket owned by one user:
    - "Supermarket" (EXPENSE)
    - "Salary" (INCOME)
    """

    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=new_id)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False)  # INCOME / EXPENSE
    color = Column(String, nullable=True)
    icon = Column(String, nullable=True)
    is_default = Column(Boolean, default=False)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("User", back_populates="categories")
    entries = relationship("Entry", back_populates="category")


# =========================
# Entry (income / expense line)
# =========================
class Entry(Base):
    """
    Core table of the analytical query path.
    Every row belongs to exactly one user through user_id.
    """

    __tablename__ = "entries"

    id = Column(String(36), primary_key=True, default=new_id)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    category_id = Column(
        String(36),
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    description = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    type = Column(String, nullable=False)  # INCOME / EXPENSE
    is_fixed = Column(Boolean, default=False)
    notification_time_minutes = Column(Integer, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    deleted_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # Relationships
    owner = relationship("User", back_populates="entries")
    category = relationship("Category", back_populates="entries")
