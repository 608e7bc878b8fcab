"""
Reward ledger: append-only point transactions backing each user's balance.

Every balance change goes through ``credit`` / ``debit`` together with
exactly one ``RewardTransaction`` whose ``balance`` is the post-change
total, inside a single commit.
"""
import secrets
import string
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func

from errors import NotFound, PreconditionFailure, ValidationFailure
from extensions import db
from models import (
    REWARD_CATEGORIES,
    SOURCE_TYPES,
    Redemption,
    RewardItem,
    RewardTransaction,
    User,
    utcnow,
)
from notifications import dispatch

logger = structlog.get_logger(__name__)

WEEKLY_STREAK_BONUS = 20
MONTHLY_STREAK_BONUS = 100
CODE_ALPHABET = string.ascii_uppercase + string.digits
ITEM_FIELDS = (
    "name", "description", "category", "points_cost", "valid_from",
    "valid_until", "total_quantity", "remaining_quantity", "is_active",
)


def _positive_int(value, field) -> int:
    # bool is an int subclass
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValidationFailure(f"{field} must be a positive integer")
    return value


def _category(value) -> str:
    if value not in REWARD_CATEGORIES:
        raise ValidationFailure(f"Unknown category '{value}'")
    return value


def _check_validity(valid_from, valid_until):
    if not isinstance(valid_until, datetime):
        raise ValidationFailure("valid_until is required")
    if valid_from is not None and valid_from > valid_until:
        raise ValidationFailure("valid_from is after valid_until")


class RewardLedger:

    def __init__(self, notifier=None, expiry_days: int = 365):
        self.notifier = notifier
        self.expiry = timedelta(days=expiry_days)

    # ---------- Balance mutations, caller commits ----------

    def credit(self, user_id, points, tx_type, source_type, description,
               source_id=None, source_model=None, now=None):
        updated = User.query.filter_by(id=user_id).update(
            {User.reward_points: User.reward_points + points}
        )
        if not updated:
            raise NotFound(f"User not found with id of {user_id}")
        return self._append(
            user_id, points, tx_type, source_type, description,
            source_id, source_model, now,
        )

    def debit(self, user_id, points, tx_type, source_type, description,
              source_id=None, source_model=None, now=None):
        # Guarded update so two racing debits cannot both pass the check
        updated = (
            User.query
            .filter(User.id == user_id, User.reward_points >= points)
            .update({User.reward_points: User.reward_points - points})
        )
        if not updated:
            raise PreconditionFailure("Insufficient reward points")
        return self._append(
            user_id, -points, tx_type, source_type, description,
            source_id, source_model, now,
        )

    def _append(self, user_id, delta, tx_type, source_type, description,
                source_id, source_model, now):
        now = now or utcnow()
        balance = (
            db.session.query(User.reward_points)
            .filter_by(id=user_id)
            .scalar()
        )
        txn = RewardTransaction(
            user_id=user_id,
            type=tx_type,
            points=delta,
            balance=balance,
            description=description,
            source_type=source_type,
            source_id=source_id,
            source_model=source_model,
            expires_at=now + self.expiry if tx_type == "earned" else None,
            created_at=now,
        )
        db.session.add(txn)
        db.session.flush()
        return txn

    # ---------- Public operations ----------

    def grant(self, user_id, points, source_type, source_ref=None,
              description="", source_model=None, now=None):
        """Credit ``points`` to a user and record an ``earned`` transaction."""
        points = _positive_int(points, "points")
        if source_type not in SOURCE_TYPES:
            raise ValidationFailure(f"Unknown source type '{source_type}'")

        try:
            txn = self.credit(
                user_id, points, "earned", source_type,
                description or f"Earned {points} points",
                source_ref, source_model, now,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "points_granted",
            user_id=user_id,
            points=txn.points,
            balance=txn.balance,
            source_type=source_type,
        )
        return txn

    def adjust(self, user_id, delta, description, now=None):
        """Manual correction. A negative delta may not overdraw the balance."""
        if not delta:
            raise ValidationFailure("delta must be non-zero")
        try:
            if delta > 0:
                txn = self.credit(
                    user_id, delta, "adjusted", "system", description, now=now
                )
            else:
                if db.session.get(User, user_id) is None:
                    raise NotFound(f"User not found with id of {user_id}")
                txn = self.debit(
                    user_id, -delta, "adjusted", "system", description, now=now
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("points_adjusted", user_id=user_id, delta=delta, balance=txn.balance)
        return txn

    def redeem(self, user_id, item_id, now=None):
        now = now or utcnow()

        item = self.get_item(item_id)
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User not found with id of {user_id}")

        if not item.is_active:
            raise PreconditionFailure("This reward is not active")
        if item.valid_until < now:
            raise PreconditionFailure("This reward has expired")
        if item.remaining_quantity == 0:
            raise PreconditionFailure("This reward is out of stock")
        if user.reward_points < item.points_cost:
            raise PreconditionFailure("Insufficient reward points")

        try:
            if item.remaining_quantity != -1:
                claimed = (
                    RewardItem.query
                    .filter(RewardItem.id == item.id, RewardItem.remaining_quantity > 0)
                    .update({RewardItem.remaining_quantity: RewardItem.remaining_quantity - 1})
                )
                if not claimed:
                    raise PreconditionFailure("This reward is out of stock")

            txn = self.debit(
                user.id, item.points_cost, "redeemed", "redemption",
                f"Redeemed for {item.name}",
                source_id=item.id, source_model="RewardItem", now=now,
            )
            redemption = Redemption(
                reward_item_id=item.id,
                user_id=user.id,
                code=self._unique_code(),
                status="issued",
                redeemed_at=now,
            )
            db.session.add(redemption)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "reward_redeemed",
            user_id=user_id,
            reward_item_id=item_id,
            cost=item.points_cost,
            balance=txn.balance,
        )
        dispatch(
            self.notifier, user_id, "reward_earned",
            "Reward Redeemed Successfully",
            f"You have successfully redeemed {item.points_cost} points for "
            f"{item.name}. Your redemption code is {redemption.code}.",
            priority="high",
            now=now,
        )
        return {
            "code": redemption.code,
            "redemption": redemption,
            "remaining_points": txn.balance,
        }

    def apply_streak(self, user_id, now=None):
        """
        Evaluate the daily reporting streak for a qualifying report.

        Returns ``(points_added, new_streak)``. The weekly and monthly
        bonuses are independent: a streak that is a multiple of both earns
        both.
        """
        now = now or utcnow()

        user = (
            User.query
            .filter_by(id=user_id)
            .with_for_update()
            .first()
        )
        if user is None:
            raise NotFound(f"User not found with id of {user_id}")

        last = user.last_report_date
        extended = False
        if last is None:
            streak = 1
        elif last.date() == (now - timedelta(days=1)).date():
            streak = user.streak_count + 1
            extended = True
        elif now - last > timedelta(hours=48):
            streak = 1
        else:
            streak = max(user.streak_count, 1)

        bonuses = []
        if extended:
            if streak % 7 == 0:
                bonuses.append(WEEKLY_STREAK_BONUS)
            if streak % 30 == 0:
                bonuses.append(MONTHLY_STREAK_BONUS)

        try:
            user.streak_count = streak
            user.last_report_date = now
            for bonus in bonuses:
                self.credit(
                    user.id, bonus, "earned", "streak",
                    f"{streak}-day reporting streak bonus",
                    source_id=user.id, source_model="User", now=now,
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        points_added = sum(bonuses)
        logger.info(
            "streak_evaluated",
            user_id=user_id,
            streak=streak,
            points_added=points_added,
        )
        return points_added, streak

    # ---------- Catalog ----------

    def create_item(self, name, points_cost, valid_until, description="",
                    category="voucher", total_quantity=None, valid_from=None,
                    now=None) -> RewardItem:
        """
        Add a reward to the catalog.

        ``total_quantity`` of None or -1 makes the stock unlimited; otherwise
        the remaining stock starts at the total.
        """
        now = now or utcnow()
        if not name:
            raise ValidationFailure("name is required")
        total = -1 if total_quantity in (None, -1) else _positive_int(total_quantity, "total_quantity")
        item = RewardItem(
            name=name,
            description=description or "",
            category=_category(category),
            points_cost=_positive_int(points_cost, "points_cost"),
            valid_from=valid_from or now,
            valid_until=valid_until,
            total_quantity=total,
            remaining_quantity=total,
        )
        _check_validity(item.valid_from, item.valid_until)
        try:
            db.session.add(item)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("reward_item_created", reward_item_id=item.id, points_cost=item.points_cost)
        return item

    def update_item(self, item_id, **fields) -> RewardItem:
        unknown = set(fields) - set(ITEM_FIELDS)
        if unknown:
            raise ValidationFailure(f"Cannot update {', '.join(sorted(unknown))}")

        item = self.get_item(item_id)
        if "name" in fields and not fields["name"]:
            raise ValidationFailure("name is required")
        if "points_cost" in fields:
            _positive_int(fields["points_cost"], "points_cost")
        if "category" in fields:
            _category(fields["category"])
        for key in ("total_quantity", "remaining_quantity"):
            if key in fields and fields[key] != -1:
                if not isinstance(fields[key], int) or isinstance(fields[key], bool) or fields[key] < 0:
                    raise ValidationFailure(f"{key} must be -1 or a non-negative integer")
        _check_validity(
            fields.get("valid_from", item.valid_from),
            fields.get("valid_until", item.valid_until),
        )

        try:
            for key, value in fields.items():
                setattr(item, key, value)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("reward_item_updated", reward_item_id=item.id, fields=sorted(fields))
        return item

    def deactivate_item(self, item_id) -> RewardItem:
        """Take an item off the catalog. Issued redemptions keep pointing at it."""
        item = self.get_item(item_id)
        try:
            item.is_active = False
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("reward_item_deactivated", reward_item_id=item.id)
        return item

    def get_item(self, item_id) -> RewardItem:
        item = db.session.get(RewardItem, item_id)
        if item is None:
            raise NotFound(f"Reward item not found with id of {item_id}")
        return item

    def list_items(self, category=None, max_points=None, now=None):
        """Active, unexpired items, cheapest first."""
        now = now or utcnow()
        query = RewardItem.query.filter(
            RewardItem.is_active.is_(True),
            RewardItem.valid_until >= now,
        )
        if category:
            query = query.filter_by(category=category)
        if max_points is not None:
            query = query.filter(RewardItem.points_cost <= max_points)
        return query.order_by(RewardItem.points_cost, RewardItem.id).all()

    # ---------- Reads ----------

    def balance(self, user_id) -> int:
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User not found with id of {user_id}")
        return user.reward_points

    def transactions(self, user_id, type=None, source_type=None):
        query = RewardTransaction.query.filter_by(user_id=user_id)
        if type:
            query = query.filter_by(type=type)
        if source_type:
            query = query.filter_by(source_type=source_type)
        return query.order_by(RewardTransaction.id).all()

    def verify_balance(self, user_id) -> bool:
        """Replay the user's deltas and compare with the stored balance."""
        running = 0
        for txn in self.transactions(user_id):
            running += txn.points
            if running != txn.balance:
                logger.warning(
                    "ledger_snapshot_mismatch",
                    user_id=user_id,
                    transaction_id=txn.id,
                    expected=running,
                    recorded=txn.balance,
                )
                return False
        return running == self.balance(user_id)

    def redemptions(self, user_id):
        return (
            Redemption.query
            .filter_by(user_id=user_id)
            .order_by(Redemption.redeemed_at.desc())
            .all()
        )

    def stats(self):
        totals = dict(
            db.session.query(RewardTransaction.type, func.sum(RewardTransaction.points))
            .group_by(RewardTransaction.type)
            .all()
        )
        by_source = {
            source: {"count": count, "total_points": total}
            for source, count, total in (
                db.session.query(
                    RewardTransaction.source_type,
                    func.count(RewardTransaction.id),
                    func.sum(RewardTransaction.points),
                )
                .group_by(RewardTransaction.source_type)
                .all()
            )
        }
        return {
            "earned": totals.get("earned") or 0,
            "redeemed": abs(totals.get("redeemed") or 0),
            "by_source": by_source,
        }

    def _unique_code(self, length: int = 8) -> str:
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
            if not Redemption.query.filter_by(code=code).first():
                return code
