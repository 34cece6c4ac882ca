import importlib.util
from pathlib import Path

import pytest

from hotelbook.service.runtime import get_runtime
from hotelbook.storage.models import Account

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
PASSWORD = "Harbour-View-2024!"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_admin(bootstrap):
    result = bootstrap(" Ops@Hotel.example ", PASSWORD, "Front Desk")

    account = get_runtime().store.get_account_by_email("ops@hotel.example")
    assert result["status"] == "created"
    assert account.role == "admin"
    assert get_runtime().auth.hasher.verify(account.password_hash, PASSWORD)


def test_second_run_is_a_no_op(bootstrap):
    first = bootstrap("ops@hotel.example", PASSWORD, "Front Desk")

    again = bootstrap("ops@hotel.example", PASSWORD, "Front Desk")

    assert again == {"account_id": first["account_id"], "email": "ops@hotel.example", "status": "already_admin"}


def test_weak_password_is_refused(bootstrap):
    with pytest.raises(ValueError):
        bootstrap("ops@hotel.example", "short", "Front Desk")

    assert get_runtime().store.get_account_by_email("ops@hotel.example") is None


def test_guest_accounts_are_not_promoted(bootstrap):
    runtime = get_runtime()
    runtime.store.create_account(Account.new("guest@hotel.example", "Guest", "hash"))

    with pytest.raises(ValueError):
        bootstrap("guest@hotel.example", PASSWORD, "Guest")

    assert runtime.store.get_account_by_email("guest@hotel.example").role == "user"


def test_dry_run_writes_nothing(bootstrap):
    result = bootstrap("ops@hotel.example", PASSWORD, "Front Desk", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_email("ops@hotel.example") is None
