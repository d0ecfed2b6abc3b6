"""
Data models for the storage backend.

"""
from sqlalchemy import JSON, BigInteger, Column, DateTime, String

from database import Base


class Account(Base):
    """
    One row per tenant: plan, quota ledger and sharing state.

    - username: unique tenant name, primary key (also the session `sub`).
    - plan_id / billing_cycle / next_billing_at: billing state; a paid plan
      whose next_billing_at has passed is either downgraded or blocked
      (see account_service.resolve_billing_status).
    - storage_used_bytes: quota ledger; only changed through atomic UPDATEs,
      never below zero.
    - storage_limit_bytes: plan limit; 0 means unlimited.
    - root_folder_id: Drive folder user-<username>; created lazily on the
      first drive operation.
    - shared_root_folder_ids: roots other accounts shared *to* this account,
      in grant order.
    - shared_with_usernames: accounts this account shared *its* root with.
    """
    __tablename__ = "accounts"

    username = Column(String(255), primary_key=True, index=True)

    plan_id = Column(String(32), nullable=True)
    billing_cycle = Column(String(16), nullable=True)
    next_billing_at = Column(DateTime(timezone=True), nullable=True)

    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    storage_limit_bytes = Column(BigInteger, nullable=False, default=0)

    root_folder_id = Column(String(255), nullable=True)

    # Lists are replaced wholesale on update (no in-place mutation tracking)
    shared_root_folder_ids = Column(JSON, nullable=True)
    shared_with_usernames = Column(JSON, nullable=True)
