import hashlib
import importlib.util
from pathlib import Path

import contracting
import pytest
from contracting.client import ContractingClient
from contracting.compilation import whitelists

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CRANK_PATH = PROJECT_ROOT / "con_curve_crank.py"
STEALTH_PATH = PROJECT_ROOT / "con_stealth.py"
CURRENCY_PATH = Path(__file__).resolve().parent / "contracts" / "con_currency.py"
CLIENT_PATH = PROJECT_ROOT / "stealth_client.py"
SUBMISSION_PATH = (
    Path(contracting.__file__).resolve().parent / "contracts" / "submission.s.py"
)

ACCOUNTS = ("alice", "bob", "carol")
STARTING_BALANCE = 10**9


@pytest.fixture(scope="session", autouse=True)
def enable_sha3_and_whitelist():
    whitelists.ALLOWED_BUILTINS.update({"hashlib", "decimal"})

    if not hasattr(hashlib, "sha3"):
        def _sha3(data):
            if isinstance(data, str):
                data = data.encode("utf-8")
            return hashlib.sha3_256(data).hexdigest()

        setattr(hashlib, "sha3", _sha3)


@pytest.fixture(scope="session")
def client_module():
    spec = importlib.util.spec_from_file_location("stealth_client_tests", CLIENT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def client():
    client = ContractingClient(signer="operator", metering=False)
    client.flush()
    client.set_submission_contract(str(SUBMISSION_PATH))
    return client


def submit(client, path, name):
    client.submit(path.read_text(), name=name, owner=None)
    return client.get_contract(name)


@pytest.fixture
def currency(client):
    return submit(client, CURRENCY_PATH, "con_currency")


@pytest.fixture
def crank(client, currency):
    return submit(client, CRANK_PATH, "con_curve_crank")


@pytest.fixture
def stealth(client, crank):
    return submit(client, STEALTH_PATH, "con_stealth")


@pytest.fixture
def funded(currency):
    for account in ("operator",) + ACCOUNTS:
        if account != "operator":
            currency.transfer(amount=STARTING_BALANCE, to=account)
        for spender in ("con_curve_crank", "con_stealth"):
            currency.approve(amount=STARTING_BALANCE, to=spender, signer=account)
    return currency
