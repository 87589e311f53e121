from __future__ import annotations

from typing import Any

from tm_mobile_proxy.gateway.inspections import (
    build_inspection_summary,
    build_task_update_payload,
    find_repair_order,
    flatten_inspection_tasks,
)


def _inspection(inspection_id: int, groups: int, tasks_per_group: int) -> dict[str, Any]:
    return {
        "id": inspection_id,
        "inspectionTasks": [
            {
                "title": f"Group {group}",
                "tasks": [
                    {
                        "id": inspection_id * 100 + group * 10 + task,
                        "name": f"Task {task}",
                        "inspectionRating": "GOOD",
                        "finding": "",
                    }
                    for task in range(tasks_per_group)
                ],
            }
            for group in range(groups)
        ],
    }


def test_flatten_yields_every_task_with_parent_inspection() -> None:
    tasks = flatten_inspection_tasks([_inspection(7, groups=3, tasks_per_group=4)])

    assert len(tasks) == 12
    assert {task["inspectionId"] for task in tasks} == {7}
    assert [task["id"] for task in tasks[:5]] == [700, 701, 702, 703, 710]


def test_flatten_uses_task_group_then_group_title() -> None:
    tasks = flatten_inspection_tasks(
        [
            {
                "id": 1,
                "inspectionTasks": [
                    {
                        "title": "Brakes",
                        "tasks": [
                            {"id": 10, "name": "Front pads", "inspectionGroup": "Front"},
                            {"id": 11, "name": "Rear pads", "finding": "2mm"},
                        ],
                    }
                ],
            }
        ]
    )

    assert tasks == [
        {
            "id": 10,
            "inspectionId": 1,
            "name": "Front pads",
            "group": "Front",
            "currentRating": None,
            "currentFinding": None,
        },
        {
            "id": 11,
            "inspectionId": 1,
            "name": "Rear pads",
            "group": "Brakes",
            "currentRating": None,
            "currentFinding": "2mm",
        },
    ]


def test_flatten_tolerates_missing_collections() -> None:
    inspections = [
        {"id": 1},
        {"id": 2, "inspectionTasks": None},
        {"id": 3, "inspectionTasks": []},
        {"id": 4, "inspectionTasks": [{"title": "Empty"}, {"title": "Null", "tasks": None}]},
        "not-an-inspection",
        _inspection(5, groups=1, tasks_per_group=1),
    ]

    tasks = flatten_inspection_tasks(inspections)

    assert [task["inspectionId"] for task in tasks] == [5]
    assert flatten_inspection_tasks(None) == []
    assert flatten_inspection_tasks({"content": []}) == []


def test_find_repair_order_matches_number_in_page_or_list() -> None:
    page = {
        "content": [
            {"id": 1, "repairOrderNumber": 247150},
            {"id": 2, "repairOrderNumber": 24715},
        ]
    }
    assert find_repair_order(page, "24715") == {"id": 2, "repairOrderNumber": 24715}
    assert find_repair_order([{"id": 3, "repairOrderNumber": "24715"}], "24715") == {
        "id": 3,
        "repairOrderNumber": "24715",
    }
    assert find_repair_order({"id": 4, "repairOrderNumber": 1}, "1") == {
        "id": 4,
        "repairOrderNumber": 1,
    }
    assert find_repair_order(page, "99") is None
    assert find_repair_order({"content": None}, "24715") is None


def test_summary_joins_customer_and_vehicle_fields() -> None:
    order = {
        "id": 901,
        "repairOrderNumber": 24715,
        "customer": {"firstName": "Dana", "lastName": "Reyes"},
        "vehicle": {"year": 2017, "make": "Honda", "model": None},
    }

    summary = build_inspection_summary(order, [])

    assert summary == {
        "roId": 901,
        "roNumber": 24715,
        "customer": "Dana Reyes",
        "vehicle": "2017 Honda",
        "tasks": [],
    }
    assert build_inspection_summary({"id": 1}, [])["customer"] == ""


def test_task_update_payload_fills_required_defaults() -> None:
    payload = build_task_update_payload(
        task_id=33, inspection_id=7, rating="POOR", finding="Pads at 2mm"
    )

    assert payload == {
        "id": 33,
        "inspectionId": 7,
        "name": "",
        "inspectionGroup": None,
        "inspectionRating": "POOR",
        "finding": "Pads at 2mm",
        "recommendation": "",
        "sortOrder": 0,
        "media": [],
    }


def test_task_update_payload_merges_caller_task_snapshot() -> None:
    payload = build_task_update_payload(
        task_id=33,
        inspection_id=7,
        task={
            "id": 999,
            "name": "Front pads",
            "group": "Brakes",
            "currentRating": "FAIR",
            "currentFinding": "3mm",
            "sortOrder": 4,
        },
        finding="2mm",
    )

    assert payload["id"] == 33
    assert payload["name"] == "Front pads"
    assert payload["inspectionGroup"] == "Brakes"
    assert payload["inspectionRating"] == "FAIR"
    assert payload["finding"] == "2mm"
    assert payload["sortOrder"] == 4
    assert "currentRating" not in payload
