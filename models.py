from datetime import datetime, timezone
from extensions import db


def utcnow() -> datetime:
    # Naive UTC, the same shape SQLite hands back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


BIN_STATUSES = ("pending", "in-progress", "collected", "overflow", "maintenance")
SCHEDULE_STATUSES = ("pending", "completed", "missed", "rescheduled", "canceled")
RECURRENCES = ("none", "daily", "weekly", "biweekly", "monthly")
ROUTE_STATUSES = ("planned", "in-progress", "completed", "canceled")
TRANSACTION_TYPES = ("earned", "redeemed", "expired", "adjusted")
SOURCE_TYPES = (
    "bin_report", "feedback", "streak", "referral", "voucher",
    "special_event", "system", "redemption",
)
NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent")
REWARD_CATEGORIES = ("voucher", "discount", "freebie", "experience", "donation")


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True)

    # "resident", "garbage_collector" or "admin"
    role = db.Column(db.String(32), nullable=False, default="resident")

    # Only the reward ledger writes these three
    reward_points = db.Column(db.Integer, nullable=False, default=0)
    streak_count = db.Column(db.Integer, nullable=False, default=0)
    last_report_date = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "reward_points": self.reward_points,
            "streak_count": self.streak_count,
            "last_report_date": _iso(self.last_report_date),
        }


class Bin(db.Model):
    __tablename__ = "bins"

    id = db.Column(db.Integer, primary_key=True)
    bin_code = db.Column(db.String(64), unique=True, nullable=False)

    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    address = db.Column(db.String(255))
    waste_type = db.Column(db.String(32), default="mixed")
    capacity_litres = db.Column(db.Integer, nullable=False, default=120)

    fill_level = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(32), nullable=False, default="pending")
    priority = db.Column(db.Integer, nullable=False, default=3)
    last_collected = db.Column(db.DateTime)

    reported_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    reward_assigned = db.Column(db.Boolean, nullable=False, default=False)
    assigned_collector_id = db.Column(db.Integer, db.ForeignKey("users.id"))

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    reported_by = db.relationship("User", foreign_keys=[reported_by_id])
    assigned_collector = db.relationship("User", foreign_keys=[assigned_collector_id])

    def needs_collection(self) -> bool:
        return self.fill_level >= 80 or self.status == "overflow"

    def to_dict(self):
        return {
            "id": self.id,
            "bin_code": self.bin_code,
            "lat": self.latitude,
            "lon": self.longitude,
            "address": self.address,
            "waste_type": self.waste_type,
            "capacity_litres": self.capacity_litres,
            "fill_level": self.fill_level,
            "status": self.status,
            "priority": self.priority,
            "last_collected": _iso(self.last_collected),
            "reported_by_id": self.reported_by_id,
            "reward_assigned": self.reward_assigned,
            "needs_collection": self.needs_collection(),
            "is_active": self.is_active,
        }


class BinCollection(db.Model):
    """One row per physical emptying of a bin."""

    __tablename__ = "bin_collections"

    id = db.Column(db.Integer, primary_key=True)

    bin_id = db.Column(db.Integer, db.ForeignKey("bins.id"), nullable=False)
    collected_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    route_id = db.Column(db.Integer, db.ForeignKey("routes.id"))
    schedule_id = db.Column(db.Integer, db.ForeignKey("schedules.id"))

    collected_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    fill_level_before = db.Column(db.Integer)
    waste_weight_kg = db.Column(db.Float)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    notes = db.Column(db.Text, default="")

    bin = db.relationship(
        "Bin",
        backref=db.backref(
            "collections",
            order_by="BinCollection.collected_at",
            lazy=True,
        ),
    )


class Schedule(db.Model):
    __tablename__ = "schedules"

    id = db.Column(db.Integer, primary_key=True)

    bin_id = db.Column(db.Integer, db.ForeignKey("bins.id"), nullable=False)
    collector_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    assigned_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    previous_schedule_id = db.Column(db.Integer, db.ForeignKey("schedules.id"))

    scheduled_date = db.Column(db.DateTime, nullable=False)
    # "HH:MM" strings, both optional
    time_window_start = db.Column(db.String(5))
    time_window_end = db.Column(db.String(5))

    status = db.Column(db.String(32), nullable=False, default="pending")
    # priority = min(10, base_priority + overdue bump), see schedule_engine.review_overdue
    base_priority = db.Column(db.Integer, nullable=False, default=3)
    priority = db.Column(db.Integer, nullable=False, default=3)

    recurrence = db.Column(db.String(16), nullable=False, default="none")
    recurrence_end_date = db.Column(db.DateTime)
    notes = db.Column(db.Text, default="")

    completed_at = db.Column(db.DateTime)
    actual_fill_level = db.Column(db.Integer)
    duration_minutes = db.Column(db.Integer)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    bin = db.relationship("Bin", backref=db.backref("schedules", lazy=True))
    collector = db.relationship("User", foreign_keys=[collector_id])
    previous = db.relationship("Schedule", remote_side=[id])

    def to_dict(self):
        return {
            "id": self.id,
            "bin_id": self.bin_id,
            "collector_id": self.collector_id,
            "previous_schedule_id": self.previous_schedule_id,
            "scheduled_date": _iso(self.scheduled_date),
            "time_window": [self.time_window_start, self.time_window_end],
            "status": self.status,
            "priority": self.priority,
            "recurrence": self.recurrence,
            "recurrence_end_date": _iso(self.recurrence_end_date),
            "notes": self.notes,
            "completed_at": _iso(self.completed_at),
            "actual_fill_level": self.actual_fill_level,
            "duration_minutes": self.duration_minutes,
        }


class Route(db.Model):
    __tablename__ = "routes"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120))

    collector_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    planned_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))

    status = db.Column(db.String(32), nullable=False, default="planned")
    actual_start_time = db.Column(db.DateTime)
    actual_end_time = db.Column(db.DateTime)

    vehicle_capacity = db.Column(db.Float, nullable=False, default=10000.0)
    current_capacity_used = db.Column(db.Float, nullable=False, default=0.0)
    completion_rate = db.Column(db.Integer, nullable=False, default=0)

    start_lat = db.Column(db.Float)
    start_lon = db.Column(db.Float)
    distance_km = db.Column(db.Float, default=0.0)
    estimated_time_min = db.Column(db.Float, default=0.0)
    notes = db.Column(db.Text, default="")

    created_at = db.Column(
        db.DateTime,
        default=utcnow,
        nullable=False
    )

    collector = db.relationship("User", foreign_keys=[collector_id])

    def to_dict(self):
        return {
            "route_id": self.id,
            "name": self.name,
            "collector_id": self.collector_id,
            "status": self.status,
            "actual_start_time": _iso(self.actual_start_time),
            "actual_end_time": _iso(self.actual_end_time),
            "vehicle_capacity": self.vehicle_capacity,
            "current_capacity_used": round(self.current_capacity_used, 2),
            "completion_rate": self.completion_rate,
            "distance_km": self.distance_km,
            "estimated_time_min": self.estimated_time_min,
            "notes": self.notes,
            "stops": [s.to_dict() for s in self.stops],
        }


class RouteStop(db.Model):
    __tablename__ = "route_stops"
    __table_args__ = (db.UniqueConstraint("route_id", "bin_id"),)

    id = db.Column(db.Integer, primary_key=True)

    route_id = db.Column(
        db.Integer,
        db.ForeignKey("routes.id"),
        nullable=False
    )
    bin_id = db.Column(
        db.Integer,
        db.ForeignKey("bins.id"),
        nullable=False
    )

    order_index = db.Column(db.Integer, nullable=False)
    distance_from_prev_km = db.Column(db.Float, default=0.0)
    est_duration_min = db.Column(db.Float, default=0.0)

    collected = db.Column(db.Boolean, nullable=False, default=False)
    collected_at = db.Column(db.DateTime)
    waste_weight_kg = db.Column(db.Float)
    notes = db.Column(db.Text, default="")

    route = db.relationship(
        "Route",
        backref=db.backref(
            "stops",
            order_by="RouteStop.order_index",
            lazy=True
        ),
    )

    bin = db.relationship(
        "Bin",
        backref=db.backref("route_stops", lazy=True)
    )

    def to_dict(self):
        return {
            "order_index": self.order_index,
            "bin_id": self.bin_id,
            "distance_from_prev_km": self.distance_from_prev_km,
            "est_duration_min": self.est_duration_min,
            "collected": self.collected,
            "collected_at": _iso(self.collected_at),
            "waste_weight_kg": self.waste_weight_kg,
        }


class RewardTransaction(db.Model):
    """Append-only. ``balance`` is the user's total right after this row."""

    __tablename__ = "reward_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)
    points = db.Column(db.Integer, nullable=False)
    balance = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=False)

    source_type = db.Column(db.String(32), nullable=False)
    source_id = db.Column(db.Integer)
    source_model = db.Column(db.String(32))

    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "points": self.points,
            "balance": self.balance,
            "description": self.description,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "source_model": self.source_model,
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
        }


class RewardItem(db.Model):
    __tablename__ = "reward_items"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(32), default="voucher")
    points_cost = db.Column(db.Integer, nullable=False)

    valid_from = db.Column(db.DateTime, default=utcnow)
    valid_until = db.Column(db.DateTime, nullable=False)

    # -1 means unlimited
    total_quantity = db.Column(db.Integer, nullable=False, default=-1)
    remaining_quantity = db.Column(db.Integer, nullable=False, default=-1)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "points_cost": self.points_cost,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "total_quantity": self.total_quantity,
            "remaining_quantity": self.remaining_quantity,
            "is_active": self.is_active,
        }


class Redemption(db.Model):
    __tablename__ = "redemptions"

    id = db.Column(db.Integer, primary_key=True)
    reward_item_id = db.Column(db.Integer, db.ForeignKey("reward_items.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    code = db.Column(db.String(16), unique=True, nullable=False)
    # "pending", "issued", "used", "expired" or "canceled"
    status = db.Column(db.String(16), nullable=False, default="issued")
    redeemed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    used_at = db.Column(db.DateTime)

    reward_item = db.relationship(
        "RewardItem",
        backref=db.backref("redemptions", lazy=True)
    )

    def to_dict(self):
        return {
            "id": self.id,
            "reward_item_id": self.reward_item_id,
            "reward_name": self.reward_item.name if self.reward_item else None,
            "code": self.code,
            "status": self.status,
            "redeemed_at": _iso(self.redeemed_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    type = db.Column(db.String(32), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(16), nullable=False, default="medium")

    related_bin_id = db.Column(db.Integer)
    related_schedule_id = db.Column(db.Integer)
    related_route_id = db.Column(db.Integer)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime)
    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }
