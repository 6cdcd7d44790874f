from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from navigator.models.base import Base


class Price(Base):
    __tablename__ = "prices"

    stripe_price_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    unit_amount: Mapped[int | None] = mapped_column(Integer)  # minor units (cents)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default="usd")
    interval: Mapped[str | None] = mapped_column(String(20))  # "month", "year"
    active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="prices")  # noqa: F821
