"""SQLite persistence for orders and history"""

from decimal import Decimal

from database import ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSED


def _row(number, allocation, is_valid=True, was_fixed=False, is_duplicate=False):
    return {
        "raw_number": number,
        "number": number,
        "allocation_gb": Decimal(str(allocation)),
        "is_valid": is_valid,
        "was_fixed": was_fixed,
        "is_duplicate": is_duplicate,
    }


def test_create_and_get_order(database):
    order_id = database.create_order([
        _row("0554739033", 5, was_fixed=True),
        _row("0201234567", "2.5"),
        _row("0201234567", 1, is_duplicate=True),
    ], source="paste")

    order = database.get_order(order_id)

    assert order["status"] == ORDER_STATUS_PENDING
    assert order["source"] == "paste"
    assert order["entry_count"] == 3
    assert order["valid_count"] == 2
    assert order["duplicate_count"] == 1
    assert order["fixed_count"] == 1
    assert order["total_gb"] == Decimal("8.5")
    assert [entry["number"] for entry in order["entries"]] == ["0554739033", "0201234567", "0201234567"]
    assert order["entries"][1]["allocation_gb"] == Decimal("2.5")
    assert order["entries"][2]["is_duplicate"] is True


def test_get_missing_order_returns_none(database):
    assert database.get_order("missing") is None


def test_list_orders_filters_by_status(database):
    first = database.create_order([_row("0554739033", 5)])
    second = database.create_order([_row("0201234567", 1)])
    database.mark_order_processed(first)

    assert [order["id"] for order in database.list_orders()] == [first, second]
    assert [order["id"] for order in database.list_orders(ORDER_STATUS_PENDING)] == [second]
    assert [order["id"] for order in database.list_orders(ORDER_STATUS_PROCESSED)] == [first]


def test_mark_processed_only_transitions_once(database):
    order_id = database.create_order([_row("0554739033", 5)])

    assert database.mark_order_processed(order_id) is True
    processed = database.get_order(order_id)
    assert processed["status"] == ORDER_STATUS_PROCESSED
    assert processed["processed_at"]

    assert database.mark_order_processed(order_id) is False
    assert database.get_order(order_id)["processed_at"] == processed["processed_at"]
    assert database.mark_order_processed("missing") is False


def test_delete_order_removes_entries(database):
    order_id = database.create_order([_row("0554739033", 5)])

    assert database.delete_order(order_id) is True
    assert database.get_order(order_id) is None
    assert database.delete_order(order_id) is False
    assert database.check_database_health()["table_counts"]["order_entries"] == 0


def test_history_round_trip(database):
    history_id = database.save_history({
        "type": "bundle-allocator",
        "created_at": "2024-05-01T15:07:09",
        "entry_count": 2,
        "valid_count": 1,
        "invalid_count": 1,
        "duplicate_count": 0,
        "total_gb": Decimal("6"),
        "entries": [{"number": "0554739033", "allocationGB": 5.0, "isValid": True, "isDuplicate": False}],
    })
    database.save_history({"type": "bundle-categorizer", "created_at": "2024-05-02T09:00:00"})

    records = database.list_history()
    assert [record["date"] for record in records] == ["2024-05-02", "2024-05-01"]

    day = database.list_history(date="2024-05-01")
    assert len(day) == 1
    assert day[0]["id"] == history_id
    assert day[0]["total_gb"] == Decimal("6")
    assert day[0]["entries"][0]["number"] == "0554739033"


def test_clear_history(database):
    database.save_history({"type": "bundle-allocator"})
    database.save_history({"type": "bundle-allocator"})

    assert database.clear_history() == 2
    assert database.list_history() == []


def test_health_check(database):
    database.create_order([_row("0554739033", 5)])
    health = database.check_database_health()

    assert health["file_exists"]
    assert health["accessible"]
    assert health["writable"]
    assert health["table_counts"] == {"orders": 1, "order_entries": 1, "history": 0}
