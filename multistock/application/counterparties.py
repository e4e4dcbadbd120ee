from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from decimal import Decimal
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from multistock.core.logging_config import get_logger
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import CounterpartyNotFound, DuplicateCounterparty, ValidationError
from multistock.domain.models import Client, Sale, UNPAID_STATUSES
from multistock.infrastructure.db import reading, transaction
from .schemas import ClientCreate, ClientStats, ClientUpdate, OverdueClient

logger = get_logger(__name__)

CENT = Decimal("0.01")


def overdue_by_client(db: Session, today: date, grace_days: int = 0) -> List[Dict[str, Any]]:
    """Unpaid, uncancelled sales more than ``grace_days`` past due, per active client.

    Runs inside the caller's transaction. Largest overdue total first.
    """
    rows = db.execute(
        select(Sale, Client)
        .join(Client, Sale.client_id == Client.id)
        .where(Sale.cancelled.is_(False))
        .where(Sale.payment_status.in_(UNPAID_STATUSES))
        .where(Client.active.is_(True))
        .order_by(Client.id, Sale.sale_date)
    ).all()

    grouped: Dict[int, Dict[str, Any]] = {}
    for sale, client in rows:
        due = sale.sale_date + timedelta(days=client.payment_terms or 0)
        days_past_due = (today - due).days
        if days_past_due <= grace_days:
            continue
        entry = grouped.setdefault(client.id, {
            "client_id": client.id,
            "client_code": client.client_code,
            "business_name": client.business_name,
            "contact_person": client.contact_person,
            "email": client.email,
            "phone": client.phone,
            "whatsapp": client.whatsapp,
            "payment_terms": client.payment_terms or 0,
            "overdue_sales": 0,
            "total_overdue_amount": Decimal("0"),
            "oldest_overdue_date": sale.sale_date,
            "max_days_overdue": 0,
            "days": [],
        })
        entry["overdue_sales"] += 1
        entry["total_overdue_amount"] += sale.total_amount
        entry["max_days_overdue"] = max(entry["max_days_overdue"], days_past_due)
        entry["days"].append(days_past_due)

    for entry in grouped.values():
        days = entry.pop("days")
        entry["avg_days_overdue"] = (Decimal(sum(days)) / len(days)).quantize(CENT)
    return sorted(grouped.values(), key=lambda e: (-e["total_overdue_amount"], e["client_code"]))


class CounterpartyStore:
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def create(self, data: ClientCreate) -> Client:
        now = self.clock.now()
        client = Client(**data.model_dump(), created_at=now, updated_at=now)
        try:
            with transaction(self.db):
                if self._by_code(data.client_code) is not None:
                    raise DuplicateCounterparty(data.client_code)
                self.db.add(client)
        except IntegrityError as exc:
            raise DuplicateCounterparty(data.client_code) from exc
        logger.info(f"Client created: {client.client_code}")
        return client

    def get(self, client_id: int, include_inactive: bool = False) -> Client:
        with reading(self.db):
            client = self.db.get(Client, client_id, populate_existing=True)
        if client is None or (not client.active and not include_inactive):
            raise CounterpartyNotFound(client_id)
        return client

    def get_by_code(self, client_code: str) -> Client:
        with reading(self.db):
            client = self._by_code(client_code)
        if client is None:
            raise CounterpartyNotFound(client_code)
        return client

    def _by_code(self, client_code: str) -> Optional[Client]:
        stmt = select(Client).where(Client.client_code == client_code).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def list(
        self,
        client_type: Optional[str] = None,
        city: Optional[str] = None,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Client]:
        stmt = select(Client).execution_options(populate_existing=True)
        if not include_inactive:
            stmt = stmt.where(Client.active.is_(True))
        if client_type:
            stmt = stmt.where(Client.client_type == client_type)
        if city:
            stmt = stmt.where(Client.city == city)
        stmt = stmt.order_by(Client.business_name, Client.id).limit(limit).offset(offset)
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    def search(self, term: str, limit: int = 20) -> List[Client]:
        """Case-insensitive match on business name, client code, contact or email."""
        pattern = f"%{term.lower()}%"
        stmt = (
            select(Client)
            .where(Client.active.is_(True))
            .where(or_(
                func.lower(Client.business_name).like(pattern),
                func.lower(Client.client_code).like(pattern),
                func.lower(Client.contact_person).like(pattern),
                func.lower(Client.email).like(pattern),
            ))
            .order_by(Client.business_name)
            .limit(limit)
        )
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    def update(self, client_id: int, data: ClientUpdate) -> Client:
        changes = data.model_dump(exclude_unset=True)
        with transaction(self.db):
            client = self.db.get(Client, client_id, populate_existing=True)
            if client is None:
                raise CounterpartyNotFound(client_id)
            for field, value in changes.items():
                setattr(client, field, value)
            client.updated_at = self.clock.now()
        return client

    def deactivate(self, client_id: int) -> Client:
        return self.update(client_id, ClientUpdate(active=False))

    def stats(self) -> ClientStats:
        with reading(self.db):
            total, active, cities, states, avg_credit, avg_terms = self.db.execute(
                select(
                    func.count(Client.id),
                    func.coalesce(func.sum(case((Client.active.is_(True), 1), else_=0)), 0),
                    func.count(func.distinct(Client.city)),
                    func.count(func.distinct(Client.state)),
                    func.avg(Client.credit_limit),
                    func.avg(Client.payment_terms),
                )
            ).one()
            by_type = dict(self.db.execute(
                select(Client.client_type, func.count(Client.id))
                .group_by(Client.client_type)
                .order_by(Client.client_type)
            ).all())
        return ClientStats(
            total_clients=total,
            active_clients=active,
            by_type=by_type,
            total_cities=cities,
            total_states=states,
            avg_credit_limit=Decimal(str(avg_credit or 0)).quantize(CENT),
            avg_payment_terms=Decimal(str(avg_terms or 0)).quantize(CENT),
        )

    def overdue_clients(self, days_overdue: int = 0) -> List[OverdueClient]:
        """Active clients with unpaid sales more than ``days_overdue`` days past their due date."""
        if days_overdue < 0:
            raise ValidationError("days_overdue cannot be negative", {"days_overdue": days_overdue})
        with reading(self.db):
            entries = overdue_by_client(self.db, self.clock.today(), grace_days=days_overdue)
        return [OverdueClient(**entry) for entry in entries]
