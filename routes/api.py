from flask import Blueprint, current_app, request, jsonify
from datetime import datetime, timezone

from errors import ValidationFailure
from models import utcnow

api_bp = Blueprint("api", __name__, url_prefix="/api")


def engines():
    return current_app.extensions["collection"]


def _payload():
    return request.get_json(silent=True) or {}


def _require(data, *fields):
    missing = [f for f in fields if data.get(f) is None]
    if missing:
        raise ValidationFailure(f"{', '.join(missing)} required")


def _parse_datetime(value, field):
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        except (TypeError, ValueError):
            raise ValidationFailure(f"{field} must be an ISO date")
    # Stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ---------- Bins ----------

@api_bp.route("/bins", methods=["POST"])
def register_bin():
    data = _payload()
    _require(data, "bin_code")
    bin_obj = engines()["bins"].register_bin(
        data["bin_code"],
        latitude=data.get("lat"),
        longitude=data.get("lon"),
        address=data.get("address"),
        waste_type=data.get("waste_type", "mixed"),
        capacity_litres=data.get("capacity_litres", 120),
        assigned_collector_id=data.get("assigned_collector_id"),
    )
    return jsonify(bin_obj.to_dict()), 201


@api_bp.route("/bins/needing-collection")
def bins_needing_collection():
    return jsonify([b.to_dict() for b in engines()["bins"].bins_needing_collection()])


@api_bp.route("/bins/<int:bin_id>")
def get_bin(bin_id):
    return jsonify(engines()["bins"].get(bin_id).to_dict())


@api_bp.route("/bins/<int:bin_id>/report", methods=["POST"])
def report_fill_level(bin_id):
    data = _payload()
    _require(data, "fill_level")
    priority = engines()["bins"].report_fill_level(
        bin_id, data["fill_level"], reporter_id=data.get("reporter_id")
    )
    bin_obj = engines()["bins"].get(bin_id)
    return jsonify({"priority": priority, "bin": bin_obj.to_dict()})


@api_bp.route("/bins/<int:bin_id>/collect", methods=["POST"])
def collect_bin(bin_id):
    data = _payload()
    _require(data, "collector_id")
    bin_obj = engines()["bins"].mark_collected(bin_id, data["collector_id"], report=data)
    return jsonify(bin_obj.to_dict())


# ---------- Schedules ----------

@api_bp.route("/schedules", methods=["POST"])
def create_schedule():
    data = _payload()
    _require(data, "bin_id", "collector_id", "scheduled_date")
    schedule = engines()["schedules"].create(
        data["bin_id"],
        data["collector_id"],
        _parse_datetime(data["scheduled_date"], "scheduled_date"),
        time_window_start=data.get("time_window_start"),
        time_window_end=data.get("time_window_end"),
        priority=data.get("priority"),
        recurrence=data.get("recurrence", "none"),
        recurrence_end_date=_parse_datetime(data.get("recurrence_end_date"), "recurrence_end_date"),
        notes=data.get("notes", ""),
        assigned_by_id=data.get("assigned_by_id"),
    )
    return jsonify(schedule.to_dict()), 201


@api_bp.route("/schedules/<int:schedule_id>")
def get_schedule(schedule_id):
    return jsonify(engines()["schedules"].get(schedule_id).to_dict())


@api_bp.route("/schedules/<int:schedule_id>/complete", methods=["POST"])
def complete_schedule(schedule_id):
    data = _payload()
    schedule, next_schedule = engines()["schedules"].complete(
        schedule_id,
        actual_fill_level=data.get("actual_fill_level"),
        duration_minutes=data.get("duration_minutes"),
        notes=data.get("notes", ""),
    )
    return jsonify({
        "schedule": schedule.to_dict(),
        "next_schedule": next_schedule.to_dict() if next_schedule else None,
    })


@api_bp.route("/schedules/<int:schedule_id>/reschedule", methods=["POST"])
def reschedule(schedule_id):
    data = _payload()
    _require(data, "new_date")
    old, new = engines()["schedules"].reschedule(
        schedule_id,
        _parse_datetime(data["new_date"], "new_date"),
        reason=data.get("reason", ""),
    )
    return jsonify({"old_schedule": old.to_dict(), "new_schedule": new.to_dict()})


@api_bp.route("/schedules/<int:schedule_id>/cancel", methods=["POST"])
def cancel_schedule(schedule_id):
    schedule = engines()["schedules"].cancel(schedule_id, reason=_payload().get("reason", ""))
    return jsonify(schedule.to_dict())


# ---------- Routes ----------

@api_bp.route("/routes", methods=["POST"])
def plan_route():
    data = _payload()
    _require(data, "collector_id", "bin_ids")
    depot = None
    if data.get("depot_lat") is not None and data.get("depot_lon") is not None:
        depot = (float(data["depot_lat"]), float(data["depot_lon"]))
    route = engines()["routes"].plan(
        data["collector_id"],
        data["bin_ids"],
        name=data.get("name"),
        vehicle_capacity=data.get("vehicle_capacity"),
        depot=depot,
        planned_by_id=data.get("planned_by_id"),
    )
    return jsonify(route.to_dict()), 201


@api_bp.route("/routes/<int:route_id>")
def get_route(route_id):
    return jsonify(engines()["routes"].get(route_id).to_dict())


@api_bp.route("/routes/<int:route_id>/start", methods=["POST"])
def start_route(route_id):
    return jsonify(engines()["routes"].start(route_id).to_dict())


@api_bp.route("/routes/<int:route_id>/collect", methods=["POST"])
def collect_stop(route_id):
    data = _payload()
    _require(data, "bin_id")
    location = None
    if data.get("lat") is not None and data.get("lon") is not None:
        location = (data["lat"], data["lon"])
    route = engines()["routes"].collect_stop(
        route_id,
        data["bin_id"],
        weight=data.get("weight"),
        notes=data.get("notes", ""),
        location=location,
    )
    return jsonify(route.to_dict())


@api_bp.route("/routes/<int:route_id>/end", methods=["POST"])
def end_route(route_id):
    route = engines()["routes"].end(route_id, notes=_payload().get("notes", ""))
    return jsonify(route.to_dict())


# ---------- Rewards ----------

def _item_fields(data):
    fields = {k: data[k] for k in ("name", "description", "category", "points_cost",
                                   "total_quantity", "remaining_quantity", "is_active")
              if k in data}
    for key in ("valid_from", "valid_until"):
        if key in data:
            fields[key] = _parse_datetime(data[key], key)
    return fields


@api_bp.route("/rewards/items")
def list_reward_items():
    max_points = request.args.get("max_points", type=int)
    items = engines()["ledger"].list_items(
        category=request.args.get("category"),
        max_points=max_points,
    )
    return jsonify([item.to_dict() for item in items])


@api_bp.route("/rewards/items", methods=["POST"])
def create_reward_item():
    data = _payload()
    _require(data, "name", "points_cost", "valid_until")
    item = engines()["ledger"].create_item(
        data["name"],
        data["points_cost"],
        _parse_datetime(data["valid_until"], "valid_until"),
        description=data.get("description", ""),
        category=data.get("category", "voucher"),
        total_quantity=data.get("total_quantity"),
        valid_from=_parse_datetime(data.get("valid_from"), "valid_from"),
    )
    return jsonify(item.to_dict()), 201


@api_bp.route("/rewards/items/<int:item_id>")
def get_reward_item(item_id):
    return jsonify(engines()["ledger"].get_item(item_id).to_dict())


@api_bp.route("/rewards/items/<int:item_id>", methods=["PUT"])
def update_reward_item(item_id):
    item = engines()["ledger"].update_item(item_id, **_item_fields(_payload()))
    return jsonify(item.to_dict())


@api_bp.route("/rewards/items/<int:item_id>", methods=["DELETE"])
def deactivate_reward_item(item_id):
    return jsonify(engines()["ledger"].deactivate_item(item_id).to_dict())


@api_bp.route("/rewards/items/<int:item_id>/redeem", methods=["POST"])
def redeem_reward(item_id):
    data = _payload()
    _require(data, "user_id")
    result = engines()["ledger"].redeem(data["user_id"], item_id)
    return jsonify({
        "code": result["code"],
        "remaining_points": result["remaining_points"],
        "redemption": result["redemption"].to_dict(),
    })


@api_bp.route("/users/<int:user_id>/transactions")
def user_transactions(user_id):
    ledger = engines()["ledger"]
    transactions = ledger.transactions(
        user_id,
        type=request.args.get("type"),
        source_type=request.args.get("source_type"),
    )
    return jsonify({
        "balance": ledger.balance(user_id),
        "transactions": [t.to_dict() for t in transactions],
    })


# ---------- Health Check ----------

@api_bp.route("/health")
def health_check():
    return jsonify(
        {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
        }
    )
