"""Pytest configuration and fixtures for testing the Household Ledger API."""
import pytest
from fastapi.testclient import TestClient

from household_ledger.config import Settings
from household_ledger.lookups import LookupTables
from household_ledger.models import Category, Person, Subcategory, TransactionType
from household_ledger.store import InMemoryFinanceStore

USER_ID = "user-1"
ACCESS_TOKEN = "token-1"
OTHER_USER_ID = "user-2"
OTHER_ACCESS_TOKEN = "token-2"


def seed_store(store: InMemoryFinanceStore) -> InMemoryFinanceStore:
    store.add_user(USER_ID, ACCESS_TOKEN, email="ana@example.com")
    store.add_user(OTHER_USER_ID, OTHER_ACCESS_TOKEN, email="bruno@example.com")

    store.add_person(Person(id="p-joao", user_id=USER_ID, name="João"))
    store.add_person(Person(id="p-maria", user_id=USER_ID, name="Maria"))
    store.add_person(Person(id="p-pedro", user_id=USER_ID, name="Pedro", is_active=False))

    store.add_category(Category(id="c-food", user_id=USER_ID, name="Alimentação", type=TransactionType.EXPENSE))
    store.add_category(Category(id="c-transport", user_id=USER_ID, name="Transporte", type=TransactionType.EXPENSE))
    store.add_category(Category(id="c-salary", user_id=USER_ID, name="Salário", type=TransactionType.INCOME))
    store.add_category(
        Category(id="c-leisure", user_id=USER_ID, name="Lazer", type=TransactionType.EXPENSE, is_active=False)
    )

    store.add_subcategory(Subcategory(id="s-market", user_id=USER_ID, category_id="c-food", name="Mercado"))
    store.add_subcategory(Subcategory(id="s-restaurant", user_id=USER_ID, category_id="c-food", name="Restaurante"))
    return store


@pytest.fixture
def store():
    """In-memory finance store seeded with one user's persons and categories."""
    return seed_store(InMemoryFinanceStore())


@pytest.fixture
def expense_lookups(store):
    return LookupTables.build(
        store.list_persons(USER_ID),
        store.list_categories(USER_ID),
        store.list_subcategories(USER_ID),
        TransactionType.EXPENSE,
    )


@pytest.fixture
def temp_progress_dir(tmp_path, monkeypatch):
    """Point import progress files at a temporary directory and disable the commit cooldown."""
    progress_dir = tmp_path / "progress"
    monkeypatch.setenv("IMPORT_PROGRESS_DIR", str(progress_dir))
    monkeypatch.setenv("IMPORT_COMMIT_COOLDOWN_SECONDS", "0")
    return progress_dir


@pytest.fixture
def client(store, temp_progress_dir, monkeypatch):
    """Create a test client wired to a fresh store and progress directory."""
    import household_ledger.main as main_module

    monkeypatch.setattr(main_module, "services", main_module.create_services(store, Settings()))
    return TestClient(main_module.app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ACCESS_TOKEN}"}


@pytest.fixture
def sample_csv_content():
    """Sample expense CSV in the default column order."""
    return (
        "Data,Valor,Pessoa,Categoria,Subcategoria,Observação\n"
        "15/03/2024,\"127,61\",João,Alimentação,Mercado,compras do mês\n"
        "2024-03-16,\"1.234,56\",maria,transporte,,\n"
        "17/03/24,50,João,Alimentação,restaurante,\n"
    )


@pytest.fixture
def sample_csv_file(sample_csv_content, tmp_path):
    """Create a temporary CSV file for testing."""
    csv_file = tmp_path / "gastos.csv"
    csv_file.write_text(sample_csv_content, encoding="utf-8")
    return csv_file
