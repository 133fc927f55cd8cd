import json
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from shopline_payments.database import Base

ORDER_STATUSES = ("pending", "on-hold", "processing", "completed", "failed", "cancelled", "refunded")


def utcnow() -> datetime:
    # Naive UTC keeps SQLite and Postgres comparisons consistent.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderMeta(Base):
    __tablename__ = "order_meta"
    __table_args__ = (UniqueConstraint("order_id", "meta_key"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    meta_key = Column(String, index=True, nullable=False)
    meta_value = Column(Text)                      # JSON-encoded


class OrderNote(Base):
    __tablename__ = "order_notes"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    status = Column(String, default="pending", nullable=False, index=True)
    payment_method = Column(String, index=True)    # local gateway id, e.g. shopline_credit
    transaction_id = Column(String)
    date_paid = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    version = Column(Integer, nullable=False)

    meta = relationship("OrderMeta", cascade="all, delete-orphan", lazy="selectin")
    notes = relationship("OrderNote", cascade="all, delete-orphan", order_by="OrderNote.id", lazy="selectin")

    # Compare-and-set on every UPDATE; concurrent writers raise StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    def _meta_row(self, key):
        for row in self.meta:
            if row.meta_key == key:
                return row
        return None

    def get_meta(self, key, default=None):
        row = self._meta_row(key)
        if row is None or row.meta_value is None:
            return default
        return json.loads(row.meta_value)

    def update_meta(self, key, value):
        encoded = json.dumps(value, ensure_ascii=False)
        row = self._meta_row(key)
        if row is None:
            self.meta.append(OrderMeta(meta_key=key, meta_value=encoded))
        else:
            row.meta_value = encoded

    def delete_meta(self, key):
        row = self._meta_row(key)
        if row is not None:
            self.meta.remove(row)

    def add_note(self, content: str):
        self.notes.append(OrderNote(content=content))

    def is_paid(self) -> bool:
        return self.date_paid is not None

    def update_status(self, new_status: str, note: str = ""):
        if new_status not in ORDER_STATUSES:
            raise ValueError(f"Unknown order status: {new_status}")
        old_status = self.status
        if old_status == new_status:
            return
        self.status = new_status
        message = f"Order status changed from {old_status} to {new_status}."
        self.add_note(f"{note} {message}".strip() if note else message)

    def payment_complete(self, transaction_id: str = ""):
        """Mark the order paid; no-op when it already is."""
        if self.is_paid():
            return
        if transaction_id:
            self.transaction_id = transaction_id
        self.date_paid = utcnow()
        if self.status in ("pending", "on-hold", "failed", "cancelled"):
            self.update_status("processing", "Payment complete.")


class CustomerAccount(Base):
    __tablename__ = "customer_accounts"

    user_id = Column(Integer, primary_key=True)
    email = Column(String)
    name = Column(String)
    phone = Column(String)
    shopline_customer_id = Column(String, unique=True, index=True)
    instruments_cache = Column(JSON)
    instruments_cached_at = Column(DateTime)

    def clear_instruments_cache(self):
        self.instruments_cache = None
        self.instruments_cached_at = None
