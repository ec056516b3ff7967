import pytest

from incubator import audit, models
from incubator.services import approvals, fulfillment, ledger, requests
from incubator.tests.conftest import make_item, make_team, make_user, request_data


@pytest.fixture
def people(db):
    leader = make_user(db, "incubator", "Team Lead")
    manager = make_user(db, "manager", "Manager")
    team = make_team(db, leader=leader)
    return {"leader": leader, "manager": manager, "team": team}


def _approved(db, people, items, **kwargs):
    created = requests.create_request(
        db, people["leader"], request_data(people["team"], items, **kwargs)
    )
    requests.submit_request(db, created.request.id, people["leader"])
    return requests.set_status(db, created.request.id, "approved", people["manager"])


def test_partial_assignment_grants_what_is_available(db, people):
    item = make_item(db, 5)

    result = _approved(db, people, [{"inventory_item_id": item.id, "quantity": 8}])

    line = result.request.items[0]
    assert line.status == "approved"
    assert line.approved_quantity == 5
    assert "approved 5 of 8" in line.notes
    assert [(o.outcome, o.quantity) for o in result.outcomes] == [("partial", 5)]
    db.refresh(item)
    assert item.available_quantity == 0
    rows = ledger.list_transactions(db, item.id)
    assert [(r.transaction_type, r.previous_quantity, r.new_quantity) for r in rows] == [
        ("assign", 5, 0)
    ]
    assert ledger.balance_holds(db, item)


def test_single_level_approval_distributes_and_assigns(db, people):
    snacks = make_item(db, 10, name="Coffee pods", category="Refreshments")
    laptop = make_item(db, 2, name="Laptop", category="Electronics")
    approver = make_user(db, "manager", "Approver")
    created = requests.create_request(
        db,
        people["leader"],
        request_data(
            people["team"],
            [
                {"inventory_item_id": snacks.id, "quantity": 3},
                {"inventory_item_id": laptop.id, "quantity": 2},
            ],
            approval_chain=[approver.id],
        ),
    )
    requests.submit_request(db, created.request.id, people["leader"])

    result = approvals.approve(db, created.request.id, 1, approver)

    assert result.request.status == "approved"
    by_name = {line.item_name: line for line in result.request.items}
    assert by_name["Coffee pods"].status == "distributed"
    assert by_name["Coffee pods"].distributed_quantity == 3
    assert by_name["Coffee pods"].distribution_date is not None
    assert by_name["Laptop"].status == "approved"
    assert by_name["Laptop"].approved_quantity == 2
    assert sorted(o.outcome for o in result.outcomes) == ["assigned", "distributed"]

    db.refresh(snacks)
    db.refresh(laptop)
    assert (snacks.available_quantity, snacks.consumed_quantity) == (7, 3)
    assert laptop.available_quantity == 0
    log = db.query(models.ConsumptionLog).filter_by(item_id=snacks.id).one()
    assert log.quantity == 3
    assert log.team_id == people["team"].id
    assignment = db.query(models.InventoryAssignment).filter_by(item_id=laptop.id).one()
    assert (assignment.quantity, assignment.status) == (2, "active")

    history = audit.list_request_history(db, created.request.id)
    processed = [entry for entry in history if entry.action == "fulfillment_processed"]
    assert len(processed) == 1
    assert processed[0].new_value["status"] == "approved"


def test_last_unit_goes_to_the_first_approval_only(db, people):
    item = make_item(db, 1, name="Oscilloscope")

    first = _approved(db, people, [{"inventory_item_id": item.id, "quantity": 1}])
    second = _approved(db, people, [{"inventory_item_id": item.id, "quantity": 1}])

    assert [o.outcome for o in first.outcomes] == ["assigned"]
    assert [o.outcome for o in second.outcomes] == ["declined"]
    assert second.request.items[0].approved_quantity == 0
    assert second.request.status == "partially_approved"
    db.refresh(item)
    assert item.available_quantity == 0
    assert db.query(models.InventoryAssignment).filter_by(item_id=item.id).count() == 1


def test_consumable_shortage_leaves_line_pending(db, people):
    item = make_item(db, 2, name="Sparkling water", category="Refreshments")

    result = _approved(db, people, [{"inventory_item_id": item.id, "quantity": 5}])

    line = result.request.items[0]
    assert line.status == "pending"
    assert "requested 5, available 2" in line.notes
    assert [o.outcome for o in result.outcomes] == ["shortage"]
    assert result.request.status == "approved"
    db.refresh(item)
    assert (item.available_quantity, item.consumed_quantity) == (2, 0)
    assert db.query(models.ConsumptionLog).filter_by(item_id=item.id).count() == 0


def test_mixed_lines_roll_up_to_partially_approved(db, people):
    empty = make_item(db, 0, name="Soldering station")

    result = _approved(
        db,
        people,
        [
            {"item_name": "Name badges", "quantity": 20},
            {"inventory_item_id": empty.id, "quantity": 1},
        ],
    )

    outcomes = {o.outcome for o in result.outcomes}
    assert outcomes == {"free_text", "declined"}
    assert result.request.status == "partially_approved"
    statuses = {line.item_name: line.status for line in result.request.items}
    assert statuses == {"Name badges": "approved", "Soldering station": "declined"}


def test_failing_line_is_isolated_from_the_rest(db, people, monkeypatch):
    good = make_item(db, 4, name="Microscope")
    bad = make_item(db, 4, name="Centrifuge")
    original = fulfillment._fulfil_item

    def flaky(db, request, item, actor_id):
        if item.inventory_item_id == bad.id:
            raise RuntimeError("ledger offline")
        return original(db, request, item, actor_id)

    monkeypatch.setattr(fulfillment, "_fulfil_item", flaky)

    result = _approved(
        db,
        people,
        [
            {"inventory_item_id": bad.id, "quantity": 1},
            {"inventory_item_id": good.id, "quantity": 2},
        ],
    )

    by_outcome = {o.outcome: o for o in result.outcomes}
    assert set(by_outcome) == {"failed", "assigned"}
    assert by_outcome["failed"].detail == "ledger offline"
    statuses = {line.item_name: line.status for line in result.request.items}
    assert statuses == {"Centrifuge": "pending", "Microscope": "approved"}
    assert result.request.status == "approved"
    db.refresh(good)
    db.refresh(bad)
    assert (good.available_quantity, bad.available_quantity) == (2, 4)


def test_consumable_request_flag_forces_distribution(db, people):
    item = make_item(db, 6, name="Printer paper", category="Office")

    result = _approved(
        db,
        people,
        [{"inventory_item_id": item.id, "quantity": 2}],
        is_consumable_request=True,
    )

    assert [o.outcome for o in result.outcomes] == ["distributed"]
    db.refresh(item)
    assert item.consumed_quantity == 2


@pytest.mark.parametrize(
    "category,frequent,line_flag,expected",
    [
        ("Refreshments", False, False, True),
        ("consumables", False, False, True),
        ("Equipment", True, False, True),
        ("Equipment", False, True, True),
        ("Equipment", False, False, False),
        (None, False, False, False),
    ],
)
def test_is_consumable_classification(category, frequent, line_flag, expected):
    request = models.MaterialRequest(is_consumable_request=False)
    line = models.RequestItem(item_name="Thing", quantity=1, is_consumable=line_flag)
    inventory_item = models.InventoryItem(
        name="Thing", category=category, is_frequently_distributed=frequent
    )
    assert fulfillment.is_consumable(request, line, inventory_item) is expected


def test_rollup_waits_for_pending_lines():
    request = models.MaterialRequest()
    request.items = [
        models.RequestItem(item_name="a", quantity=1, status="approved"),
        models.RequestItem(item_name="b", quantity=1, status="pending"),
    ]
    assert fulfillment.rollup_status(request) is None
    request.items[1].status = "distributed"
    assert fulfillment.rollup_status(request) == "approved"
    request.items[0].status = "declined"
    assert fulfillment.rollup_status(request) == "partially_approved"


def _stale_reads(monkeypatch, stale_value, times):
    original = ledger.read_available
    reads = []

    def read_available(db, item_id):
        reads.append(item_id)
        if len(reads) <= times:
            return stale_value
        return original(db, item_id)

    monkeypatch.setattr(ledger, "read_available", read_available)
    return reads


def test_stale_read_loses_race_and_declines_cleanly(db, people, monkeypatch):
    item = make_item(db, 0, name="Thermal cycler")
    created = requests.create_request(
        db,
        people["leader"],
        request_data(people["team"], [{"inventory_item_id": item.id, "quantity": 1}]),
    )
    requests.submit_request(db, created.request.id, people["leader"])
    # the first availability read still sees the unit another approval just took
    _stale_reads(monkeypatch, 1, times=1)

    result = requests.set_status(db, created.request.id, "approved", people["manager"])

    assert [(o.outcome, o.quantity) for o in result.outcomes] == [("declined", 0)]
    assert result.request.items[0].status == "declined"
    assert result.request.status == "partially_approved"
    db.refresh(item)
    assert item.available_quantity == 0
    assert db.query(models.InventoryAssignment).filter_by(item_id=item.id).count() == 0
    assert ledger.list_transactions(db, item.id) == []


def test_every_attempt_losing_yields_shortage(db, people, monkeypatch):
    item = make_item(db, 0, name="Spectrometer")
    created = requests.create_request(
        db,
        people["leader"],
        request_data(people["team"], [{"inventory_item_id": item.id, "quantity": 1}]),
    )
    requests.submit_request(db, created.request.id, people["leader"])
    reads = _stale_reads(monkeypatch, 1, times=100)

    result = requests.set_status(db, created.request.id, "approved", people["manager"])

    outcome = result.outcomes[0]
    assert outcome.outcome == "shortage"
    assert outcome.quantity == 0
    line = result.request.items[0]
    assert line.status == "pending"
    assert "stock changed during every reservation attempt" in line.notes
    # one availability read per attempt plus one inside each rejected write
    assert len(reads) == 2 * fulfillment.MAX_RESERVATION_ATTEMPTS
    assert result.request.status == "approved"
    db.refresh(item)
    assert item.available_quantity == 0


def test_consumption_type_reflects_quick_approval(db, people):
    item = make_item(db, 8, name="Coffee beans", category="Refreshments")
    created = requests.create_request(
        db,
        people["leader"],
        request_data(
            people["team"],
            [{"inventory_item_id": item.id, "quantity": 2}],
            requires_quick_approval=True,
        ),
    )
    requests.set_status(db, created.request.id, "approved", people["manager"])
    standard = _approved(db, people, [{"inventory_item_id": item.id, "quantity": 1}])

    types = {
        log.request_item_id: log.consumption_type
        for log in db.query(models.ConsumptionLog).filter_by(item_id=item.id).all()
    }
    assert types[created.request.items[0].id] == "quick_request"
    assert types[standard.request.items[0].id] == "standard_request"
