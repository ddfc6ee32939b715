#configuracion de los test
import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest
from fastapi.testclient import TestClient

# ======================================================
# Ajuste del sys.path para que 'lending/' sea importable
# ======================================================
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# ======================================================
# BD de pruebas: SQLite en un fichero temporal (antes de importar la app)
# ======================================================
_DB_DIR = Path(tempfile.mkdtemp(prefix="lending-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{_DB_DIR / 'lending.db'}")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-" + "x" * 32)

# ======================================================
# Imports de la aplicación
# ======================================================
from lending.main import app
from lending.core.security import create_access_token
from lending.db.session import Base, SessionLocal, engine
from lending.db.models import Item, ItemCategory, ItemStatus, User

# El startup de la app ya necesita las tablas
Base.metadata.create_all(bind=engine)


# ======================================================
# ESQUEMA LIMPIO POR TEST
# ======================================================
@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


# ======================================================
# DB SESSION FIXTURE
# ======================================================
@pytest.fixture
def db_session() -> Generator:
    """
    Provee una sesión de DB para cada test.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# ======================================================
# CLIENT FIXTURE
# ======================================================
@pytest.fixture(scope="session")
def client():
    """
    TestClient de FastAPI (con contexto, ejecuta el startup).
    """
    with TestClient(app) as c:
        yield c


# ======================================================
# FACTORÍAS
# ======================================================
@pytest.fixture
def make_user(db_session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make_user(first_name: str = "Test", last_name: str = "User", is_admin: bool = False) -> User:
        counter["n"] += 1
        user = User(
            email=f"{first_name.lower()}.{last_name.lower()}.{counter['n']}@lending.local",
            first_name=first_name,
            last_name=last_name,
            is_admin=is_admin,
            is_active=True,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_item(db_session) -> Callable[..., Item]:
    def _make_item(
        name: str = "Projector",
        category: ItemCategory = ItemCategory.EQUIPMENT,
        status: ItemStatus = ItemStatus.AVAILABLE,
    ) -> Item:
        item = Item(name=name, category=category, reservation_status=status)
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make_item


# ======================================================
# USUARIOS Y HEADERS
# ======================================================
@pytest.fixture
def admin_user(make_user) -> User:
    return make_user("Ada", "Admin", is_admin=True)


@pytest.fixture
def member_user(make_user) -> User:
    return make_user("Mia", "Member")


@pytest.fixture
def other_user(make_user) -> User:
    return make_user("Otto", "Other")


def headers_for(user: User) -> Dict[str, str]:
    token = create_access_token(user.id, user.is_admin)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user):
    return headers_for(admin_user)


@pytest.fixture
def member_headers(member_user):
    return headers_for(member_user)


@pytest.fixture
def other_headers(other_user):
    return headers_for(other_user)
