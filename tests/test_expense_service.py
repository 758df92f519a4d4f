"""Tests for the expense service: validation, lifecycle, listing."""
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, func

from intranet.core.config import settings
from intranet.core.exceptions import ValidationError, InvalidStateError, NotFoundError
from intranet.modules.expenses.models import (
    Expense,
    ExpenseApproval,
    ExpenseStatus,
    TRANSITIONS,
    transition_for,
)
from intranet.modules.expenses.services import ExpenseFilters, ExpenseSort
from intranet.modules.expenses.services.expense_service import validate_amount


async def make_draft(service, db, owner, **overrides):
    fields = {
        "amount": "45.00",
        "currency": "usd",
        "expense_date": date(2024, 5, 1),
        "description": "Team lunch",
        "category": "Meals",
    }
    fields.update(overrides)
    return await service.create(db, owner.id, **fields)


async def expense_in(service, db, users, status: ExpenseStatus):
    """Walk a fresh expense through the workflow until it reaches `status`."""
    expense_id = (await make_draft(service, db, users.employee))["id"]
    if status == ExpenseStatus.DRAFT:
        return expense_id
    await service.submit(db, expense_id)
    if status == ExpenseStatus.SUBMITTED:
        return expense_id
    if status == ExpenseStatus.REJECTED:
        await service.reject(db, expense_id, users.manager.id, "no receipt")
        return expense_id
    await service.approve(db, expense_id, users.manager.id)
    if status == ExpenseStatus.APPROVED:
        return expense_id
    await service.mark_as_paid(db, expense_id, "wire 42")
    return expense_id


async def approval_count(db, expense_id) -> int:
    return await db.scalar(
        select(func.count(ExpenseApproval.id)).where(ExpenseApproval.expense_id == expense_id)
    )


def write_receipt(storage, name: str) -> str:
    storage.receipts_dir.mkdir(parents=True, exist_ok=True)
    (storage.receipts_dir / name).write_bytes(b"%PDF-1.4 receipt")
    return f"/uploads/receipts/{name}"


class TestCreate:
    """Draft creation and field validation."""

    async def test_creates_draft_with_related_names(self, service, db, users):
        expense = await make_draft(service, db, users.employee)

        assert expense["status"] == ExpenseStatus.DRAFT.value
        assert expense["amount"] == Decimal("45.00")
        assert expense["currency"] == "USD"
        assert expense["date"] == date(2024, 5, 1)
        assert expense["user_name"] == "Eve Employee"
        assert expense["user_email"] == "employee@example.com"
        assert expense["user_manager_id"] == users.manager.id
        assert expense["manager_name"] == "Max Manager"
        assert expense["submitted_at"] is None
        assert expense["approver_name"] is None

    async def test_currency_defaults(self, service, db, users):
        expense = await make_draft(service, db, users.employee, currency=None)
        assert expense["currency"] == settings.DEFAULT_CURRENCY

    @pytest.mark.parametrize("amount", [0, "0", -5, "-0.01", "abc", "NaN", "Infinity", None, True])
    async def test_rejects_bad_amount(self, service, db, users, amount):
        with pytest.raises(ValidationError, match="Amount"):
            await make_draft(service, db, users.employee, amount=amount)
        assert await db.scalar(select(func.count(Expense.id))) == 0

    def test_amount_kept_verbatim(self):
        assert validate_amount("12.345") == Decimal("12.345")
        assert validate_amount(Decimal("0.01")) == Decimal("0.01")

    @pytest.mark.parametrize("value", ["", "not-a-date", "2024-13-40", None])
    async def test_rejects_bad_date(self, service, db, users, value):
        with pytest.raises(ValidationError, match="date"):
            await make_draft(service, db, users.employee, expense_date=value)

    async def test_accepts_iso_datetime_string(self, service, db, users):
        expense = await make_draft(service, db, users.employee, expense_date="2024-05-03T10:00:00Z")
        assert expense["date"] == date(2024, 5, 3)

    @pytest.mark.parametrize("currency", ["US", "EURO", "12$"])
    async def test_rejects_bad_currency(self, service, db, users, currency):
        with pytest.raises(ValidationError, match="Currency"):
            await make_draft(service, db, users.employee, currency=currency)

    async def test_rejects_blank_description(self, service, db, users):
        with pytest.raises(ValidationError, match="Description"):
            await make_draft(service, db, users.employee, description="   ")

    async def test_rejects_unknown_category(self, service, db, users):
        with pytest.raises(ValidationError, match="Invalid category"):
            await make_draft(service, db, users.employee, category="Yachts")

    async def test_categories_read_from_settings(self, service, db, users, set_categories):
        await set_categories("Travel, Software ,,")

        expense = await make_draft(service, db, users.employee, category="Software")
        assert expense["category"] == "Software"

        with pytest.raises(ValidationError):
            await make_draft(service, db, users.employee, category="Meals")

    async def test_categories_accept_json_list(self, service, db, users, set_categories):
        await set_categories(["Hardware"])
        expense = await make_draft(service, db, users.employee, category="Hardware")
        assert expense["category"] == "Hardware"

    async def test_empty_category_setting_falls_back_to_defaults(self, service, db, users, set_categories):
        await set_categories("")
        assert await service.valid_categories(db) == settings.DEFAULT_EXPENSE_CATEGORIES

    async def test_receipt_must_live_under_upload_root(self, service, db, users):
        with pytest.raises(ValidationError):
            await make_draft(service, db, users.employee, receipt_path="/etc/passwd")
        with pytest.raises(ValidationError):
            await make_draft(service, db, users.employee, receipt_path="/uploads/../../etc/passwd")


class TestUpdate:
    """Draft edits."""

    async def test_owner_updates_draft(self, service, db, users):
        expense = await make_draft(service, db, users.employee)

        updated = await service.update(
            db, expense["id"], users.employee.id, {"amount": "60.10", "description": "Dinner"}
        )

        assert updated["amount"] == Decimal("60.10")
        assert updated["description"] == "Dinner"
        assert updated["category"] == "Meals"

    async def test_empty_patch_returns_current(self, service, db, users):
        expense = await make_draft(service, db, users.employee)
        assert await service.update(db, expense["id"], users.employee.id, {}) == expense

    async def test_unknown_fields_rejected(self, service, db, users):
        expense = await make_draft(service, db, users.employee)
        with pytest.raises(ValidationError, match="status"):
            await service.update(db, expense["id"], users.employee.id, {"status": "paid"})

    async def test_non_owner_rejected(self, service, db, users):
        expense = await make_draft(service, db, users.employee)
        with pytest.raises(InvalidStateError):
            await service.update(db, expense["id"], users.admin.id, {"amount": "1.00"})

    async def test_submitted_expense_is_frozen(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)
        with pytest.raises(InvalidStateError):
            await service.update(db, expense_id, users.employee.id, {"amount": "1.00"})
        assert (await service.get(db, expense_id))["amount"] == Decimal("45.00")

    async def test_revalidates_fields(self, service, db, users):
        expense = await make_draft(service, db, users.employee)
        with pytest.raises(ValidationError):
            await service.update(db, expense["id"], users.employee.id, {"amount": "-3"})
        with pytest.raises(ValidationError):
            await service.update(db, expense["id"], users.employee.id, {"category": "Yachts"})
        with pytest.raises(ValidationError):
            await service.update(db, expense["id"], users.employee.id, {"date": "yesterday"})

    async def test_receipt_replacement_deletes_old_file(self, service, storage, db, users):
        old_ref = write_receipt(storage, "old.pdf")
        new_ref = write_receipt(storage, "new.pdf")
        expense = await make_draft(service, db, users.employee, receipt_path=old_ref)

        updated = await service.update(db, expense["id"], users.employee.id, {"receipt_path": new_ref})

        assert updated["receipt_path"] == new_ref
        assert not (storage.receipts_dir / "old.pdf").exists()
        assert (storage.receipts_dir / "new.pdf").exists()

    async def test_missing_expense(self, service, db, users):
        with pytest.raises(NotFoundError):
            await service.update(db, uuid4(), users.employee.id, {"amount": "1"})


class TestWorkflow:
    """Submit, review and payment transitions."""

    async def test_submit_opens_approval_for_manager(self, service, db, users):
        expense = await make_draft(service, db, users.employee)

        submitted = await service.submit(db, expense["id"])

        assert submitted["status"] == ExpenseStatus.SUBMITTED.value
        assert submitted["submitted_at"] is not None
        approvals = await service.get_approvals(db, expense["id"])
        assert len(approvals) == 1
        assert approvals[0]["approver_id"] == users.manager.id
        assert approvals[0]["status"] == "pending"
        assert approvals[0]["level"] == 1
        assert approvals[0]["approver_name"] == "Max Manager"

    async def test_submit_without_manager_opens_no_approval(self, service, db, users):
        expense = await make_draft(service, db, users.other)
        await service.submit(db, expense["id"])
        assert await approval_count(db, expense["id"]) == 0

    async def test_submit_twice_fails_without_new_approval(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)
        with pytest.raises(InvalidStateError):
            await service.submit(db, expense_id)
        assert await approval_count(db, expense_id) == 1

    async def test_submit_missing_expense(self, service, db, users):
        with pytest.raises(NotFoundError):
            await service.submit(db, uuid4())

    async def test_approve_records_reviewer(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)

        approved = await service.approve(db, expense_id, users.manager.id, "ok")

        assert approved["status"] == ExpenseStatus.APPROVED.value
        assert approved["approved_by"] == users.manager.id
        assert approved["approved_at"] is not None
        assert approved["approver_name"] == "Max Manager"
        [approval] = await service.get_approvals(db, expense_id)
        assert approval["status"] == "approved"
        assert approval["comments"] == "ok"

    async def test_admin_review_replaces_pending_reviewer(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)

        await service.reject(db, expense_id, users.admin.id, "duplicate")

        [approval] = await service.get_approvals(db, expense_id)
        assert approval["approver_id"] == users.admin.id
        assert approval["status"] == "rejected"
        assert approval["comments"] == "duplicate"

    async def test_review_without_pending_row_inserts_one(self, service, db, users):
        expense = await make_draft(service, db, users.other)
        await service.submit(db, expense["id"])

        await service.approve(db, expense["id"], users.admin.id)

        [approval] = await service.get_approvals(db, expense["id"])
        assert approval["approver_id"] == users.admin.id
        assert approval["status"] == "approved"

    async def test_reject_leaves_approver_unset(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.REJECTED)
        expense = await service.get(db, expense_id)
        assert expense["status"] == ExpenseStatus.REJECTED.value
        assert expense["approved_by"] is None

    async def test_mark_as_paid(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.APPROVED)

        paid = await service.mark_as_paid(db, expense_id, "wire 42")

        assert paid["status"] == ExpenseStatus.PAID.value
        assert paid["paid_at"] is not None
        assert paid["payment_details"] == "wire 42"

    async def test_mark_submitted_as_paid_changes_nothing(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)
        before = await service.get(db, expense_id)

        with pytest.raises(InvalidStateError):
            await service.mark_as_paid(db, expense_id, "too early")

        assert await service.get(db, expense_id) == before

    @pytest.mark.parametrize("status", list(ExpenseStatus))
    async def test_only_declared_transitions_succeed(self, service, db, users, status):
        expense_id = await expense_in(service, db, users, status)
        # Failed transitions roll back and expire the seeded users
        admin_id = users.admin.id
        actions = {
            "submit": lambda: service.submit(db, expense_id),
            "approve": lambda: service.approve(db, expense_id, admin_id),
            "reject": lambda: service.reject(db, expense_id, admin_id),
            "mark_paid": lambda: service.mark_as_paid(db, expense_id),
        }

        for action, run in actions.items():
            if action in TRANSITIONS[status]:
                continue
            with pytest.raises(InvalidStateError):
                await run()
            assert (await service.get(db, expense_id))["status"] == status.value

        for action, target in TRANSITIONS[status].items():
            result = await actions[action]()
            assert result["status"] == target.value
            break

    @pytest.mark.parametrize(
        "action, expected, target",
        [
            ("submit", ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED),
            ("approve", ExpenseStatus.SUBMITTED, ExpenseStatus.APPROVED),
            ("reject", ExpenseStatus.SUBMITTED, ExpenseStatus.REJECTED),
            ("mark_paid", ExpenseStatus.APPROVED, ExpenseStatus.PAID),
        ],
    )
    def test_actions_resolve_through_transition_table(self, action, expected, target):
        assert transition_for(action) == (expected, target)

    def test_unknown_action(self):
        with pytest.raises(KeyError):
            transition_for("reopen")


class TestCompareAndSwap:
    """Conditional status updates."""

    async def test_transition_only_matches_expected_status(self, service, db, users):
        expense = await make_draft(service, db, users.employee)

        first = await service.transition(db, expense["id"], ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED)
        await db.commit()
        second = await service.transition(db, expense["id"], ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED)
        await db.commit()

        assert (first, second) == (1, 0)

    async def test_transition_on_missing_row(self, service, db, users):
        assert await service.transition(db, uuid4(), ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED) == 0

    async def test_losing_reviewer_gets_invalid_state(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.SUBMITTED)

        await service.approve(db, expense_id, users.manager.id)
        with pytest.raises(InvalidStateError):
            await service.reject(db, expense_id, users.admin.id)

        expense = await service.get(db, expense_id)
        assert expense["status"] == ExpenseStatus.APPROVED.value
        [approval] = await service.get_approvals(db, expense_id)
        assert approval["status"] == "approved"


class TestDelete:
    """Deletion of drafts and rejected expenses."""

    async def test_deletes_draft_and_receipt(self, service, storage, db, users):
        ref = write_receipt(storage, "lunch.pdf")
        expense = await make_draft(service, db, users.employee, receipt_path=ref)

        assert await service.delete(db, expense["id"]) is True

        assert await service.find_by_id(db, expense["id"]) is None
        assert not (storage.receipts_dir / "lunch.pdf").exists()

    async def test_deletes_rejected_with_approvals(self, service, db, users):
        expense_id = await expense_in(service, db, users, ExpenseStatus.REJECTED)

        await service.delete(db, expense_id)

        assert await service.find_by_id(db, expense_id) is None
        assert await approval_count(db, expense_id) == 0

    async def test_missing_receipt_file_does_not_block_delete(self, service, db, users):
        expense = await make_draft(service, db, users.employee, receipt_path="/uploads/receipts/gone.pdf")
        assert await service.delete(db, expense["id"]) is True

    @pytest.mark.parametrize(
        "status", [ExpenseStatus.SUBMITTED, ExpenseStatus.APPROVED, ExpenseStatus.PAID]
    )
    async def test_other_statuses_cannot_be_deleted(self, service, db, users, status):
        expense_id = await expense_in(service, db, users, status)
        before = await service.get(db, expense_id)

        with pytest.raises(InvalidStateError):
            await service.delete(db, expense_id)

        assert await service.get(db, expense_id) == before

    async def test_missing_expense(self, service, db, users):
        with pytest.raises(NotFoundError):
            await service.delete(db, uuid4())


class TestList:
    """Filtering, sorting and pagination."""

    @pytest.fixture
    async def seeded(self, service, db, users):
        rows = [
            (users.employee, "10.00", date(2024, 1, 10), "Meals"),
            (users.employee, "250.00", date(2024, 2, 5), "Travel"),
            (users.employee, "75.50", date(2024, 3, 1), "Training"),
            (users.other, "5.00", date(2024, 2, 20), "Meals"),
            (users.manager, "120.00", date(2024, 1, 25), "Other"),
        ]
        ids = []
        for owner, amount, when, category in rows:
            created = await make_draft(
                service, db, owner, amount=amount, expense_date=when, category=category
            )
            ids.append(created["id"])
        await service.submit(db, ids[1])
        return ids

    async def test_default_sort_is_newest_first(self, service, db, seeded):
        result = await service.list_expenses(db)
        dates = [row["date"] for row in result["data"]]
        assert dates == sorted(dates, reverse=True)

    @pytest.mark.parametrize(
        "sort, key, reverse",
        [
            (ExpenseSort.DATE_ASC, "date", False),
            (ExpenseSort.AMOUNT_DESC, "amount", True),
            (ExpenseSort.AMOUNT_ASC, "amount", False),
        ],
    )
    async def test_sorting(self, service, db, seeded, sort, key, reverse):
        result = await service.list_expenses(db, sort=sort)
        values = [row[key] for row in result["data"]]
        assert values == sorted(values, reverse=reverse)

    async def test_status_sort_uses_workflow_rank(self, service, db, seeded):
        asc = await service.list_expenses(db, sort=ExpenseSort.STATUS_ASC)
        desc = await service.list_expenses(db, sort=ExpenseSort.STATUS_DESC)
        assert asc["data"][0]["status"] == "draft"
        assert asc["data"][-1]["status"] == "submitted"
        assert desc["data"][0]["status"] == "submitted"

    async def test_filters(self, service, db, users, seeded):
        by_owner = await service.list_expenses(db, ExpenseFilters(user_id=users.employee.id))
        assert by_owner["pagination"]["total"] == 3

        by_set = await service.list_expenses(db, ExpenseFilters(user_ids=(users.employee.id, users.other.id)))
        assert by_set["pagination"]["total"] == 4

        by_status = await service.list_expenses(db, ExpenseFilters(status=ExpenseStatus.SUBMITTED))
        assert [row["id"] for row in by_status["data"]] == [seeded[1]]

        by_category = await service.list_expenses(db, ExpenseFilters(category="Meals"))
        assert by_category["pagination"]["total"] == 2

        by_dates = await service.list_expenses(
            db, ExpenseFilters(start_date=date(2024, 2, 1), end_date=date(2024, 2, 28))
        )
        assert by_dates["pagination"]["total"] == 2

        by_amount = await service.list_expenses(
            db, ExpenseFilters(min_amount=Decimal("10"), max_amount=Decimal("120"))
        )
        assert {row["amount"] for row in by_amount["data"]} == {
            Decimal("10.00"), Decimal("75.50"), Decimal("120.00")
        }

    async def test_pagination(self, service, db, seeded):
        result = await service.list_expenses(db, page=3, limit=2)
        assert len(result["data"]) == 1
        assert result["pagination"] == {
            "total": 5,
            "per_page": 2,
            "current_page": 3,
            "last_page": 3,
            "from": 5,
            "to": 5,
        }

    async def test_page_past_the_end(self, service, db, seeded):
        result = await service.list_expenses(db, page=9, limit=2)
        assert result["data"] == []
        assert result["pagination"]["from"] == 0
        assert result["pagination"]["to"] == 0

    async def test_empty_result(self, service, db, users):
        result = await service.list_expenses(db)
        assert result["pagination"]["total"] == 0
        assert result["pagination"]["last_page"] == 0

    async def test_limit_is_bounded(self, service, db, seeded):
        result = await service.list_expenses(db, limit=10_000)
        assert result["pagination"]["per_page"] == settings.MAX_PAGE_SIZE
