from __future__ import annotations

from typing import Any

TASK_UPDATE_DEFAULTS: dict[str, Any] = {
    "name": "",
    "inspectionGroup": None,
    "inspectionRating": None,
    "finding": "",
    "recommendation": "",
    "sortOrder": 0,
    "media": [],
}

# Task summaries handed out by get-inspections may be sent back as ``task``.
SUMMARY_FIELD_ALIASES = {
    "currentRating": "inspectionRating",
    "currentFinding": "finding",
    "group": "inspectionGroup",
}


def repair_order_candidates(payload: Any) -> list[dict[str, Any]]:
    """Normalize a repair-order search answer (bare list, page or single order)."""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        content = payload.get("content")
        if isinstance(content, list):
            items = content
        elif "id" in payload:
            items = [payload]
        else:
            items = []
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def find_repair_order(payload: Any, ro_number: str) -> dict[str, Any] | None:
    wanted = str(ro_number).strip()
    for order in repair_order_candidates(payload):
        number = order.get("repairOrderNumber")
        if number is not None and str(number).strip() == wanted:
            return order
    return None


def flatten_inspection_tasks(inspections: Any) -> list[dict[str, Any]]:
    """Flatten inspection -> task group -> task into ordered task summaries.

    Missing or malformed collections at any level contribute no tasks.
    """
    if not isinstance(inspections, list):
        return []

    tasks: list[dict[str, Any]] = []
    for inspection in inspections:
        if not isinstance(inspection, dict):
            continue
        groups = inspection.get("inspectionTasks")
        if not isinstance(groups, list):
            continue
        for group in groups:
            if not isinstance(group, dict):
                continue
            group_tasks = group.get("tasks")
            if not isinstance(group_tasks, list):
                continue
            for task in group_tasks:
                if not isinstance(task, dict):
                    continue
                tasks.append(
                    {
                        "id": task.get("id"),
                        "inspectionId": inspection.get("id"),
                        "name": task.get("name"),
                        "group": task.get("inspectionGroup") or group.get("title"),
                        "currentRating": task.get("inspectionRating"),
                        "currentFinding": task.get("finding"),
                    }
                )
    return tasks


def _joined(*parts: Any) -> str:
    return " ".join(str(part).strip() for part in parts if part not in (None, ""))


def customer_summary(order: dict[str, Any]) -> str:
    customer = order.get("customer")
    if not isinstance(customer, dict):
        return ""
    return _joined(customer.get("firstName"), customer.get("lastName"))


def vehicle_summary(order: dict[str, Any]) -> str:
    vehicle = order.get("vehicle")
    if not isinstance(vehicle, dict):
        return ""
    return _joined(vehicle.get("year"), vehicle.get("make"), vehicle.get("model"))


def build_inspection_summary(
    order: dict[str, Any], inspections: Any
) -> dict[str, Any]:
    return {
        "roId": order.get("id"),
        "roNumber": order.get("repairOrderNumber"),
        "customer": customer_summary(order),
        "vehicle": vehicle_summary(order),
        "tasks": flatten_inspection_tasks(inspections),
    }


def build_task_update_payload(
    *,
    task_id: Any,
    inspection_id: Any,
    task: dict[str, Any] | None = None,
    rating: Any = None,
    finding: Any = None,
) -> dict[str, Any]:
    """Merge caller input over the fields the task update endpoint requires.

    Precedence: defaults, then the caller's ``task`` snapshot, then the path
    identifiers, then explicit ``rating``/``finding``.
    """
    payload = dict(TASK_UPDATE_DEFAULTS)
    payload["media"] = []
    if task:
        for key, value in task.items():
            upstream_key = SUMMARY_FIELD_ALIASES.get(key, key)
            if upstream_key != key and upstream_key in task:
                continue
            payload[upstream_key] = value
    payload["id"] = task_id
    payload["inspectionId"] = inspection_id
    if rating is not None:
        payload["inspectionRating"] = rating
    if finding is not None:
        payload["finding"] = finding
    return payload
