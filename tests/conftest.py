from types import SimpleNamespace

import pytest

import crud
from auth import AgentIdentity, UserIdentity
from config import Settings
from database import create_engine, create_session_factory, init_db
from encryption import EncryptionManager
from file_service import FileService
from storage import LocalStorage

MASTER_KEY = "4f1c2a9be07d53c6a8f1e2d3c4b5a69788a9bacbdcedfe0f1021324354657687"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'darkdrop.db'}",
        storage_root=str(tmp_path / "storage"),
        master_key=MASTER_KEY,
        kdf_iterations=1000,
        public_base_url="https://drop.example.com",
        session_cleanup_interval_seconds=3600,
        log_level="WARNING",
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(settings):
    return LocalStorage(settings.storage_root)


@pytest.fixture
def file_service(settings, storage):
    return FileService(
        storage=storage,
        encryption=EncryptionManager(settings.master_key, iterations=settings.kdf_iterations),
        public_base_url=settings.public_base_url,
        max_upload_bytes=1024 * 1024,
    )


async def _add_user(db, email, name):
    # tests authenticate these users through identities, never through passwords
    return await crud.create_user(db, email=email, password_hash="!", name=name)


@pytest.fixture
async def tenant(db):
    """Account 'acme' with one identity per role plus an outsider with no permission."""
    account = await crud.create_account(db, "acme", "Acme Corp", domain="acme.example.com")
    admin = await _add_user(db, "admin@acme.example.com", "Ada Admin")
    writer = await _add_user(db, "writer@acme.example.com", "Wes Writer")
    reader = await _add_user(db, "reader@acme.example.com", "Rae Reader")
    outsider = await _add_user(db, "someone@elsewhere.example.com", "Otto Outsider")
    agent = await crud.create_agent(db, "Acme Assistant")

    await crud.create_permission(db, "acme", "admin", user_id=admin.id)
    await crud.create_permission(db, "acme", "write", user_id=writer.id)
    await crud.create_permission(db, "acme", "read", user_id=reader.id)
    await crud.create_permission(db, "acme", "write", agent_id=agent.id)
    await db.commit()

    return SimpleNamespace(
        account=account,
        admin=UserIdentity(id=admin.id, email=admin.email, name=admin.name),
        writer=UserIdentity(id=writer.id, email=writer.email, name=writer.name),
        reader=UserIdentity(id=reader.id, email=reader.email, name=reader.name),
        outsider=UserIdentity(id=outsider.id, email=outsider.email, name=outsider.name),
        agent=AgentIdentity(id=agent.id, name=agent.name),
        agent_api_key=agent.api_key,
    )


@pytest.fixture
async def encrypted_tenant(db, tenant):
    await crud.create_account(db, "vault", "Vault Inc", encryption_enabled=True)
    await crud.create_permission(db, "vault", "write", user_id=tenant.writer.id)
    await db.commit()
    return tenant
