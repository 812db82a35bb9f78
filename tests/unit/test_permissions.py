"""
Unit tests -- dataset role checks.
"""
import pytest

from smartbi.core.errors import PermissionDenied
from smartbi.datasets.models import Dataset, DatasetType, Permission, Role, TableConfig
from smartbi.governance.permissions import has_permission, require, role_of


@pytest.fixture
def dataset() -> Dataset:
    return Dataset(
        user_id="alice",
        name="sales",
        display_name="Sales",
        type=DatasetType.TABLE,
        table_config=TableConfig(datasource_id="ds1", table_name="sales"),
        permissions=[
            Permission(user_id="alice", role=Role.OWNER),
            Permission(user_id="bob", role=Role.VIEWER),
            Permission(user_id="carol", role=Role.EDITOR),
            Permission(user_id="carol", role=Role.VIEWER),
        ],
    )


def test_creator_is_owner_even_without_entry(dataset):
    ds = dataset.model_copy(update={"permissions": []})
    assert role_of(ds, "alice") == Role.OWNER


def test_highest_listed_role_wins(dataset):
    assert role_of(dataset, "carol") == Role.EDITOR


def test_stranger_has_no_role(dataset):
    assert role_of(dataset, "mallory") is None
    assert has_permission(dataset, "mallory") is False


@pytest.mark.parametrize("user, required, allowed", [
    ("bob", Role.VIEWER, True),
    ("bob", Role.EDITOR, False),
    ("carol", Role.EDITOR, True),
    ("carol", Role.OWNER, False),
    ("alice", Role.OWNER, True),
])
def test_role_ordering(dataset, user, required, allowed):
    assert has_permission(dataset, user, required) is allowed


def test_require_raises(dataset):
    with pytest.raises(PermissionDenied) as exc_info:
        require(dataset, "bob", Role.EDITOR)
    assert exc_info.value.required == "editor"
    assert exc_info.value.dataset_id == dataset.id


def test_require_passes(dataset):
    require(dataset, "carol", Role.EDITOR)
