from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from analytics import (
    CategoryTotal,
    LedgerEntry,
    build_category_breakdown,
    build_monthly_trends,
    build_overview,
    build_spending_patterns,
)
from auth import hash_password, verify_password
from cache import (
    CacheClass,
    ReadThroughCache,
    category_tags,
    transaction_tags,
    user_tag,
)
from errors import Conflict, InvalidReference, NotFound, Unauthorized, ValidationError
from models import Category, Role, Transaction, TransactionType, User
from money import cents_to_amount, to_cents
from periods import DateRange, month_end, month_start
from schemas import (
    CategoryIn,
    CategoryUpdate,
    LoginIn,
    ProfileUpdate,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

STALE_CACHE_WARNING = "Cached results may be stale until they expire"

SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "description": Transaction.description,
    "created_at": Transaction.created_at,
}
SORT_ORDERS = ("asc", "desc")


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def normalize_sort(sort_by: Optional[str], sort_order: Optional[str]) -> tuple[str, str]:
    column = sort_by if sort_by in SORT_COLUMNS else "date"
    order = (sort_order or "").lower()
    if order not in SORT_ORDERS:
        order = "desc"
    return column, order


def invalidate_or_warn(
    cache: Optional[ReadThroughCache], tags: list[str], warnings: list[str]
) -> None:
    if cache is None:
        return
    if not cache.invalidate(tags):
        # The write is already committed; readers may see stale data until TTL.
        logger.error(f"cache_invalidation_unconfirmed: tags={','.join(tags)}")
        warnings.append(STALE_CACHE_WARNING)


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "color": category.color,
        "createdAt": category.created_at.isoformat(),
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    category = txn.category
    return {
        "id": txn.id,
        "amount": cents_to_amount(txn.amount_cents),
        "description": txn.description,
        "type": txn.type.value,
        "date": txn.date.isoformat(),
        "createdAt": txn.created_at.isoformat(),
        "updatedAt": txn.updated_at.isoformat(),
        "category": {
            "id": category.id if category else txn.category_id,
            "name": category.name if category else None,
            "color": category.color if category else None,
        },
    }


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role.value,
        "createdAt": user.created_at.isoformat(),
    }


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    search: Optional[str] = None


class UserService:
    def __init__(
        self, session: Session, cache: Optional[ReadThroughCache] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self.warnings: list[str] = []

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def register(self, data: RegisterIn, role: Role = Role.user) -> User:
        existing = self.session.scalar(
            select(User).where(
                or_(
                    func.lower(User.email) == data.email.lower(),
                    func.lower(User.username) == data.username.lower(),
                )
            )
        )
        if existing:
            raise Conflict("User with this email or username already exists")
        user = User(
            email=data.email,
            username=data.username,
            first_name=data.first_name,
            last_name=data.last_name,
            password_hash=hash_password(data.password),
            role=role,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("User with this email or username already exists") from exc
        logger.info(f"user_registered: id={user.id} role={user.role.value}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == data.email.strip().lower())
        )
        if not user or not verify_password(data.password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        return user

    def update_profile(self, user_id: int, data: ProfileUpdate) -> User:
        user = self.get(user_id)
        fields = data.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No valid fields to update")
        for name, value in fields.items():
            setattr(user, name, value)
        self.session.commit()
        invalidate_or_warn(
            self.cache, [user_tag(user_id, CacheClass.profile)], self.warnings
        )
        return user


class CategoryService:
    def __init__(
        self, session: Session, cache: Optional[ReadThroughCache] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self.warnings: list[str] = []

    def list_all(self) -> list[Category]:
        return self.session.scalars(select(Category).order_by(Category.name)).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def usage_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
            or 0
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name):
            raise Conflict("Category with this name already exists")
        category = Category(name=name, description=data.description, color=data.color)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Category with this name already exists") from exc
        invalidate_or_warn(self.cache, category_tags(), self.warnings)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        fields = {
            k: v
            for k, v in data.model_dump(exclude_unset=True).items()
            if v is not None or k == "description"
        }
        if not fields:
            raise ValidationError("No valid fields to update")
        if "name" in fields:
            fields["name"] = fields["name"].strip()
            if self._name_taken(fields["name"], exclude_id=category_id):
                raise Conflict("Category with this name already exists")
        for name, value in fields.items():
            setattr(category, name, value)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Category with this name already exists") from exc
        invalidate_or_warn(self.cache, category_tags(), self.warnings)
        return category

    def delete(self, category_id: int) -> None:
        self.get(category_id)
        if self.usage_count(category_id) > 0:
            raise Conflict("Cannot delete category that is being used by transactions")
        try:
            self.session.execute(delete(Category).where(Category.id == category_id))
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(
                "Cannot delete category that is being used by transactions"
            ) from exc
        logger.info(f"category_deleted: id={category_id}")
        invalidate_or_warn(self.cache, category_tags(), self.warnings)


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[ReadThroughCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache
        self.warnings: list[str] = []

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise InvalidReference("Invalid category ID")
        return category

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            # The foreign key is authoritative when a category vanished
            # between the existence check and the write.
            self.session.rollback()
            raise InvalidReference("Invalid category ID") from exc

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        self._require_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=to_cents(data.amount),
            type=data.type,
            description=data.description,
            date=data.date,
        )
        self.session.add(txn)
        self._commit()
        invalidate_or_warn(self.cache, transaction_tags(self.user_id), self.warnings)
        return self.get(txn.id)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = {
            k: v
            for k, v in data.model_dump(exclude_unset=True).items()
            if v is not None or k == "description"
        }
        if not fields:
            raise ValidationError("No valid fields to update")
        if "category_id" in fields:
            self._require_category(fields["category_id"])
            txn.category_id = fields["category_id"]
        if "amount" in fields:
            txn.amount_cents = to_cents(fields["amount"])
        if "type" in fields:
            txn.type = fields["type"]
        if "description" in fields:
            txn.description = fields["description"]
        if "date" in fields:
            txn.date = fields["date"]
        self._commit()
        invalidate_or_warn(self.cache, transaction_tags(self.user_id), self.warnings)
        self.session.expire(txn)
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        invalidate_or_warn(self.cache, transaction_tags(self.user_id), self.warnings)

    def _filtered(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.search:
            like = f"%{escape_like(filters.search.lower())}%"
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Transaction.description, "")).like(
                        like, escape="\\"
                    ),
                    func.lower(Category.name).like(like, escape="\\"),
                )
            )
        return stmt

    def list(
        self,
        filters: TransactionFilters,
        *,
        page: int = 1,
        limit: int = 20,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> dict[str, object]:
        column_name, order = normalize_sort(sort_by, sort_order)
        column = SORT_COLUMNS[column_name]
        if order == "asc":
            ordering = (column.asc(), Transaction.id.asc())
        else:
            ordering = (column.desc(), Transaction.id.desc())

        count_stmt = self._filtered(
            select(func.count(Transaction.id)).select_from(Transaction).join(
                Category, Category.id == Transaction.category_id
            ),
            filters,
        )
        total = int(self.session.execute(count_stmt).scalar_one() or 0)

        stmt = self._filtered(
            select(Transaction)
            .join(Category, Category.id == Transaction.category_id)
            .options(joinedload(Transaction.category)),
            filters,
        )
        stmt = stmt.order_by(*ordering).offset((page - 1) * limit).limit(limit)
        items = self.session.scalars(stmt).all()
        return {
            "transactions": [transaction_to_dict(txn) for txn in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _entries(self, start: date, end: date) -> Iterable[LedgerEntry]:
        rows = self.session.execute(
            select(
                Transaction.date,
                Transaction.created_at,
                Transaction.type,
                Transaction.amount_cents,
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
        ).all()
        return [
            LedgerEntry(
                date=row.date,
                created_at=row.created_at,
                type=row.type,
                amount_cents=int(row.amount_cents),
            )
            for row in rows
        ]

    def overview(self, period: DateRange) -> dict[str, float]:
        rows = self.session.execute(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type)
        ).all()
        return build_overview({row.type: int(row.total or 0) for row in rows})

    def category_breakdown(self, period: DateRange) -> dict[str, object]:
        total = func.coalesce(func.sum(Transaction.amount_cents), 0)
        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                Category.color,
                total.label("total"),
                func.count(Transaction.id).label("transaction_count"),
            )
            .join(
                Transaction,
                and_(
                    Transaction.category_id == Category.id,
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(period.start, period.end),
                ),
            )
            .group_by(Category.id, Category.name, Category.color)
        ).all()
        return build_category_breakdown(
            CategoryTotal(
                id=row.id,
                name=row.name,
                color=row.color,
                amount_cents=int(row.total or 0),
                transaction_count=int(row.transaction_count or 0),
            )
            for row in rows
        )

    def monthly_trends(self, year: int, months: int = 12) -> dict[str, object]:
        entries = self._entries(month_start(year, 1), month_end(year, 12))
        return build_monthly_trends(year, months, entries)

    def spending_patterns(self, period: DateRange) -> dict[str, object]:
        return build_spending_patterns(self._entries(period.start, period.end))

    def recent_transactions(self, limit: int = 10) -> list[dict[str, object]]:
        txns = TransactionService(self.session, self.user_id).recent(limit)
        return [transaction_to_dict(txn) for txn in txns]
