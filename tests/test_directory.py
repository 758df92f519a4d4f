"""Tests for directory lookups."""
from uuid import uuid4

from intranet.modules.directory import (
    Role,
    User,
    get_direct_report_ids,
    get_manager_id,
    get_user,
)
from intranet.modules.settings import parse_category_list


class TestDirectory:

    async def test_get_user(self, db, users):
        ref = await get_user(db, users.employee.id)
        assert ref.id == users.employee.id
        assert ref.role == Role.EMPLOYEE
        assert ref.manager_id == users.manager.id

    async def test_inactive_and_unknown_users_resolve_to_none(self, db, users):
        assert await get_user(db, users.inactive.id) is None
        assert await get_user(db, uuid4()) is None

    async def test_unknown_role_is_least_privileged(self, db, users):
        contractor = User(email="c@example.com", first_name="Cy", last_name="Temp", role="contractor")
        db.add(contractor)
        await db.commit()

        ref = await get_user(db, contractor.id)
        assert ref.role == Role.EMPLOYEE

    async def test_reporting_lines(self, db, users):
        assert await get_manager_id(db, users.employee.id) == users.manager.id
        assert await get_manager_id(db, users.other.id) is None
        assert await get_direct_report_ids(db, users.manager.id) == [users.employee.id]


class TestCategoryParsing:

    def test_comma_string(self):
        assert parse_category_list(" Travel ,Meals,, ") == ["Travel", "Meals"]

    def test_list(self):
        assert parse_category_list(["Travel", " ", "Gear "]) == ["Travel", "Gear"]

    def test_other_values(self):
        assert parse_category_list(None) == []
        assert parse_category_list(42) == []
