import pytest

from incubator import models
from incubator.errors import (
    AlreadyProcessedError,
    InvalidStateError,
    NotFoundError,
    OutOfOrderApprovalError,
    PermissionDeniedError,
    ValidationError,
)
from incubator.services import approvals, requests
from incubator.tests.conftest import make_item, make_team, make_user, request_data


def _submitted_request(db, levels: int = 2, quantity: int = 2, stock: int = 5):
    leader = make_user(db, "incubator", "Team Lead")
    team = make_team(db, leader=leader)
    item = make_item(db, stock)
    approvers = [make_user(db, "manager", f"Approver {n}") for n in range(1, levels + 1)]
    created = requests.create_request(
        db,
        leader,
        request_data(
            team,
            [{"inventory_item_id": item.id, "quantity": quantity}],
            approval_chain=[approver.id for approver in approvers],
        ),
    )
    requests.submit_request(db, created.request.id, leader)
    return created.request, approvers, item


def _transaction_count(db, item):
    return db.query(models.InventoryTransaction).filter_by(item_id=item.id).count()


def test_chain_is_seeded_in_order_and_points_at_first_approver(db):
    request, approvers, _ = _submitted_request(db, levels=3)
    levels = [(a.approval_level, a.approver_id, a.status) for a in request.approvals]
    assert levels == [(n + 1, approvers[n].id, "pending") for n in range(3)]
    assert request.status == "pending_review"
    assert request.current_approver_id == approvers[0].id
    assert request.approval_chain == [str(a.id) for a in approvers]


def test_level_two_cannot_be_decided_before_level_one(db):
    request, approvers, _ = _submitted_request(db)

    with pytest.raises(OutOfOrderApprovalError):
        approvals.approve(db, request.id, 2, approvers[1])
    with pytest.raises(OutOfOrderApprovalError):
        approvals.decline(db, request.id, 2, approvers[1])

    level_two = next(a for a in request.approvals if a.approval_level == 2)
    db.refresh(level_two)
    assert level_two.status == "pending"


def test_intermediate_approval_advances_current_approver(db):
    request, approvers, item = _submitted_request(db)

    result = approvals.approve(db, request.id, 1, approvers[0], "looks fine")

    assert result.request.status == "pending_review"
    assert result.request.current_approver_id == approvers[1].id
    assert result.outcomes == []
    assert _transaction_count(db, item) == 0
    assert [e.template_key for e in result.effects if e.kind == "notify"] == [
        "request_pending_approval"
    ]


def test_final_approval_runs_fulfillment(db):
    request, approvers, item = _submitted_request(db, quantity=2, stock=5)
    approvals.approve(db, request.id, 1, approvers[0])

    result = approvals.approve(db, request.id, 2, approvers[1])

    assert result.request.status == "approved"
    assert result.request.approved_at is not None
    assert result.request.current_approver_id is None
    assert [o.outcome for o in result.outcomes] == ["assigned"]
    db.refresh(item)
    assert item.available_quantity == 3


def test_reapproval_is_rejected_without_ledger_mutation(db):
    request, approvers, item = _submitted_request(db, levels=1)
    approvals.approve(db, request.id, 1, approvers[0])
    before = _transaction_count(db, item)

    with pytest.raises(AlreadyProcessedError):
        approvals.approve(db, request.id, 1, approvers[0])

    assert _transaction_count(db, item) == before


def test_only_assigned_approver_may_act(db):
    request, approvers, _ = _submitted_request(db)
    outsider = make_user(db, "director")

    with pytest.raises(PermissionDeniedError):
        approvals.approve(db, request.id, 1, outsider)
    with pytest.raises(PermissionDeniedError):
        approvals.approve(db, request.id, 1, approvers[1])


def test_missing_level_is_not_found(db):
    request, approvers, _ = _submitted_request(db)
    with pytest.raises(NotFoundError):
        approvals.approve(db, request.id, 7, approvers[0])


@pytest.mark.parametrize("levels,declined_level", [(1, 1), (3, 1), (3, 2), (3, 3)])
def test_decline_at_any_level_declines_the_whole_request(db, levels, declined_level):
    request, approvers, item = _submitted_request(db, levels=levels)
    for level in range(1, declined_level):
        approvals.approve(db, request.id, level, approvers[level - 1])

    result = approvals.decline(db, request.id, declined_level, approvers[declined_level - 1], "no budget")

    assert result.request.status == "declined"
    assert result.request.current_approver_id is None
    statuses = {a.approval_level: a.status for a in result.request.approvals}
    assert statuses[declined_level] == "declined"
    assert all(statuses[n] == "pending" for n in range(declined_level + 1, levels + 1))
    assert _transaction_count(db, item) == 0
    if declined_level < levels:
        with pytest.raises(InvalidStateError):
            approvals.approve(db, request.id, declined_level + 1, approvers[declined_level])


def test_declined_request_rejects_further_decisions(db):
    request, approvers, _ = _submitted_request(db, levels=2)
    approvals.decline(db, request.id, 1, approvers[0])

    with pytest.raises(AlreadyProcessedError):
        approvals.approve(db, request.id, 1, approvers[0])


def test_delegate_inherits_decision_rights(db):
    request, approvers, _ = _submitted_request(db, levels=1)
    delegate = make_user(db, "director", "Delegate")

    delegated = approvals.delegate(db, request.id, 1, approvers[0], delegate.id, "on leave")

    level = delegated.request.approvals[0]
    assert level.status == "delegated"
    assert level.delegated_to_id == delegate.id
    assert delegated.request.status == "pending_review"
    assert delegated.request.current_approver_id == delegate.id
    assert delegated.effects[0].template_key == "approval_delegated"
    assert delegated.effects[0].recipients == (delegate.email,)

    result = approvals.approve(db, request.id, 1, delegate)
    assert result.request.status == "approved"


def test_delegation_rules(db):
    request, approvers, _ = _submitted_request(db, levels=1)
    plain_user = make_user(db, "incubator")
    director = make_user(db, "director")

    with pytest.raises(ValidationError):
        approvals.delegate(db, request.id, 1, approvers[0], plain_user.id)
    with pytest.raises(PermissionDeniedError):
        approvals.delegate(db, request.id, 1, director, director.id)

    approvals.delegate(db, request.id, 1, approvers[0], director.id)
    # the delegate cannot hand the level on again
    with pytest.raises(PermissionDeniedError):
        approvals.delegate(db, request.id, 1, director, approvers[0].id)


def test_write_time_ordering_check_rejects_skipped_level(db):
    request, approvers, _ = _submitted_request(db)
    level_two = approvals._get_level(db, request.id, 2)

    # bypass the read-time guard; the conditional update must still refuse
    with pytest.raises(OutOfOrderApprovalError):
        approvals._claim_level(db, level_two, "approved", None)

    db.refresh(level_two)
    assert level_two.status == "pending"
    assert level_two.decided_at is None


def test_level_can_only_be_delegated_once(db):
    request, approvers, _ = _submitted_request(db, levels=1)
    first = make_user(db, "director", "First Delegate")
    second = make_user(db, "manager", "Second Delegate")
    approvals.delegate(db, request.id, 1, approvers[0], first.id)

    with pytest.raises(InvalidStateError):
        approvals.delegate(db, request.id, 1, approvers[0], second.id)

    level = approvals._get_level(db, request.id, 1)
    db.refresh(level)
    assert (level.status, level.delegated_to_id) == ("delegated", first.id)
