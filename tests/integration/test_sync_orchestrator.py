import pytest
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.future import select

from parking_sync.__main__ import drain
from parking_sync.config import settings
from parking_sync.control_plane import crud
from parking_sync.control_plane.models_erp import SoftOneConnection
from parking_sync.control_plane.models_parking import Contract, ContractLine, Customer, Item, Payment
from parking_sync.erp.errors import RemoteError
from parking_sync.erp.execution_log import list_runs
from parking_sync.erp.orchestrator import SyncOrchestrator
from parking_sync.erp.progress import SYNC_JOB_TYPE, get_progress
from parking_sync.erp.schemas import SyncOptions, SyncStatus, Trigger

WATERMARK = datetime(2024, 6, 1, 12, 0, 0)
SINCE = "2024-06-01 12:00:00"

CUSTOMER_CONFIG = {
    "modelMapping": {
        "modelName": "CUSTOMER",
        "fieldMappings": {"TRDR": "trdr", "CODE": "code", "NAME": "name"},
        "uniqueIdentifier": {"erpField": "TRDR", "modelField": "trdr"},
        "syncDirection": "one-way",
    },
}
CUSTOMER_KEYS = ["TRDR", "CODE", "NAME", "INSDATE", "UPDDATE"]

CONTRACT_CONFIG = {
    "modelMapping": {
        "modelName": "INST",
        "fieldMappings": {"INST": "inst", "CODE": "code", "TRDR": "trdr", "INSDATE": "insdate", "UPDDATE": "upddate"},
        "uniqueIdentifier": {"erpField": "INST", "modelField": "inst"},
    },
}

LINE_CONFIG = {
    "modelMapping": {
        "modelName": "INSTLINES",
        "fieldMappings": {"INSTLINES": "instlines", "INST": "inst", "SNCODE": "sncode"},
        "uniqueIdentifier": {"erpField": "INSTLINES", "modelField": "instlines"},
    },
}
LINE_KEYS = ["INSTLINES", "INST", "SNCODE"]

PAYMENT_CONFIG = {
    "modelMapping": {
        "modelName": "PAYMENT",
        "fieldMappings": {"PAYMENT": "payment", "NAME": "name", "INSDATE": "insdate", "UPDDATE": "upddate"},
        "uniqueIdentifier": {"erpField": "PAYMENT", "modelField": "payment"},
    },
}

async def count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()

async def integration(session_factory, integration_id):
    async with session_factory() as db:
        return await crud.get_integration(db, integration_id)

async def logs(session_factory, integration_id):
    async with session_factory() as db:
        return await list_runs(db, integration_id)

def customer_rows():
    return [
        ["100", "C100", "Alpha", "2024-01-01 10:00:00", "2024-05-01 10:00:00"],
        ["101", "C101", "Beta", "2024-02-01 10:00:00", None],
        ["102", "C102", "Γάμμα", "2024-03-01 10:00:00", None],
    ]

# --- Customers ---

@pytest.mark.asyncio
async def test_customer_first_sync_creates_and_updates(session_factory, seed_integration, fake_connector,
                                                       make_orchestrator, add_rows):
    await add_rows(Customer(trdr="100", name="Old name"))
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    connector = fake_connector(rows=customer_rows(), keys=CUSTOMER_KEYS)

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.success
    assert result.status == SyncStatus.SUCCESS
    assert result.stats.erp_to_app.created == 2
    assert result.stats.erp_to_app.updated == 1
    assert result.stats.erp_to_app.total == 3
    assert result.stats.app_to_erp is None
    assert connector.calls[1] == ("table", "TRDR", "1=1", None)
    assert connector.closed

    async with session_factory() as db:
        rows = (await db.execute(select(Customer).order_by(Customer.trdr))).scalars().all()
    assert [(c.trdr, c.name) for c in rows] == [("100", "Alpha"), ("101", "Beta"), ("102", "Γάμμα")]

    stored = await integration(session_factory, iid)
    assert stored.last_sync_at == result.last_sync_at

    [log] = await logs(session_factory, iid)
    assert log.status == "success"
    assert log.stats["erpToApp"]["created"] == 2
    assert log.stats["appToErp"] is None
    assert log.details["triggeredBy"] == "manual"
    assert log.details["modelName"] == "CUSTOMER"
    assert log.duration_ms >= 0

@pytest.mark.asyncio
async def test_second_identical_run_changes_nothing(session_factory, seed_integration, fake_connector, make_orchestrator):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    orchestrator = make_orchestrator(fake_connector(rows=customer_rows(), keys=CUSTOMER_KEYS))

    first = await orchestrator.run_sync(iid)
    second = await orchestrator.run_sync(iid)

    assert first.stats.erp_to_app.created == 3
    assert second.stats.erp_to_app.created == 0
    assert second.stats.erp_to_app.updated == 0
    assert second.skipped_reasons == {"unchanged": 3}
    assert second.status == SyncStatus.SUCCESS
    assert await count(session_factory, Customer) == 3
    assert second.last_sync_at > first.last_sync_at

@pytest.mark.asyncio
async def test_customers_keyed_by_configured_field(session_factory, seed_integration, fake_connector,
                                                 make_orchestrator):
    config = {
        "modelMapping": {
            "modelName": "CUSTOMER",
            "fieldMappings": {"CODE": "code", "NAME": "name"},
            "uniqueIdentifier": {"erpField": "CODE", "modelField": "code"},
        },
    }
    iid = await seed_integration("CUSTOMER", "TRDR", config)
    connector = fake_connector(keys=["CODE", "NAME"], rows=[["C1", "Alpha"], ["C2", "Beta"]])

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.success
    assert result.stats.erp_to_app.created == 2
    async with session_factory() as db:
        rows = (await db.execute(select(Customer).order_by(Customer.code))).scalars().all()
    assert [(c.code, c.name, c.trdr) for c in rows] == [("C1", "Alpha", None), ("C2", "Beta", None)]

@pytest.mark.asyncio
async def test_watermark_never_moves_backwards(session_factory, seed_integration, fake_connector, make_orchestrator):
    future = datetime(2030, 1, 1)
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG, last_sync_at=future)

    result = await make_orchestrator(fake_connector(rows=customer_rows(), keys=CUSTOMER_KEYS)).run_sync(iid)

    assert result.success
    assert (await integration(session_factory, iid)).last_sync_at == future

# --- Incremental reads ---

@pytest.mark.asyncio
async def test_scheduled_table_read_classifies_by_dates(session_factory, seed_integration, fake_connector,
                                                       make_orchestrator, add_rows):
    await add_rows(Payment(payment=7, name="Cash"))
    iid = await seed_integration("PAYMENT", "PAYMENT", PAYMENT_CONFIG, last_sync_at=WATERMARK)
    connector = fake_connector(
        keys=["PAYMENT", "NAME", "INSDATE", "UPDDATE"],
        rows=[
            [7, "Card", "2024-05-31 10:00:00", "2024-06-01 13:00:00"],
            [8, "Bank", "2024-06-02 09:00:00", None],
            [9, "Old", "2024-01-01 00:00:00", "2024-01-02 00:00:00"],
            [10, "No dates", None, None],
        ],
    )

    result = await make_orchestrator(connector).run_sync(iid, trigger=Trigger.SCHEDULED)

    assert connector.calls[1] == (
        "table", "PAYMENT",
        f"(INSDATE>'{SINCE}' OR UPDDATE>'{SINCE}')",
        f"PAYMENT.INSDATE>{SINCE}&PAYMENT.UPDDATE>{SINCE}",
    )
    assert result.stats.erp_to_app.created == 1
    assert result.stats.erp_to_app.updated == 1
    assert result.skipped_reasons == {"not_new_or_updated": 1, "missing_dates": 1}

    [log] = await logs(session_factory, iid)
    assert log.details["triggeredBy"] == "cron"

@pytest.mark.asyncio
async def test_incremental_update_of_unknown_row_counts_as_update(session_factory, seed_integration, fake_connector,
                                                                 make_orchestrator):
    iid = await seed_integration("PAYMENT", "PAYMENT", PAYMENT_CONFIG, last_sync_at=WATERMARK)
    connector = fake_connector(
        keys=["PAYMENT", "NAME", "INSDATE", "UPDDATE"],
        rows=[[7, "Card", "2024-05-31 12:00:00", "2024-06-01 13:00:00"]],
    )

    result = await make_orchestrator(connector).run_sync(iid, trigger=Trigger.SCHEDULED)

    assert result.stats.erp_to_app.created == 0
    assert result.stats.erp_to_app.updated == 1
    async with session_factory() as db:
        assert (await db.get(Payment, 7)).name == "Card"

@pytest.mark.asyncio
async def test_named_query_key_variant_updates_existing_contract(session_factory, seed_integration, fake_connector,
                                                                 make_orchestrator, add_rows):
    await add_rows(Contract(inst=3018, trdr="55", code="OLD"))
    iid = await seed_integration("INST", "INST", CONTRACT_CONFIG, last_sync_at=WATERMARK)
    connector = fake_connector(named_rows=[
        {"inst": "003018", "code": "K1", "trdr": "55", "insdate": "2024-06-02 08:00:00", "upddate": "2024-06-02 08:00:00"},
    ])

    result = await make_orchestrator(connector).run_sync(iid, trigger=Trigger.SCHEDULED)

    assert connector.calls[1] == ("named", "135", SINCE)
    # inserted after the watermark, so counted as created even though the row existed
    assert result.stats.erp_to_app.created == 1
    assert result.stats.erp_to_app.updated == 0
    assert await count(session_factory, Contract) == 1
    async with session_factory() as db:
        assert (await db.get(Contract, 3018)).code == "K1"

@pytest.mark.asyncio
async def test_named_query_failure_falls_back_to_table(session_factory, seed_integration, fake_connector, make_orchestrator):
    iid = await seed_integration("INST", "INST", CONTRACT_CONFIG, last_sync_at=WATERMARK)
    connector = fake_connector(
        named_error=RemoteError("SqlData 135 is not defined"),
        keys=["INST", "CODE", "TRDR", "INSDATE", "UPDDATE"],
        rows=[[3019, "K2", "56", "2024-06-02 08:00:00", None]],
    )

    result = await make_orchestrator(connector).run_sync(iid, trigger=Trigger.SCHEDULED)

    assert result.success
    assert [c[0] for c in connector.calls] == ["login", "named", "table"]
    assert connector.calls[2][3] == f"INST.INSDATE>{SINCE}&INST.UPDDATE>{SINCE}"
    assert result.stats.erp_to_app.created == 1

# --- Contract lines ---

@pytest.mark.asyncio
async def test_contract_lines_are_gated_by_parent(session_factory, seed_integration, fake_connector,
                                                 make_orchestrator, add_rows):
    await add_rows(Contract(inst=10, trdr="55"), Contract(inst=11, trdr=None))
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, rows=[
        [1, 10, "ΙΚΑ1234"],
        [2, 10, "ΥΧΕ5678"],
        [3, 99, "AAA1111"],
        [4, 98, "BBB2222"],
        [5, 11, "CCC3333"],
    ])

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.stats.erp_to_app.created == 2
    assert result.stats.erp_to_app.skipped == 3
    assert result.skipped_reasons == {"parent_not_found": 2, "parent_missing_customer": 1}
    assert result.progress.has_more is False
    assert await count(session_factory, ContractLine) == 2

@pytest.mark.asyncio
async def test_resumable_sync_walks_the_dataset(session_factory, seed_integration, fake_connector,
                                               make_orchestrator, add_rows):
    await add_rows(Contract(inst=10, trdr="55"))
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, rows=[[i, 10, f"ABC{i:04d}"] for i in range(1, 8)])
    orchestrator = make_orchestrator(connector)

    first = await orchestrator.run_sync(iid, SyncOptions(limit=3))
    assert first.progress.model_dump(by_alias=True) == {
        "total": 7, "completedFrom": 0, "completedTo": 3, "nextOffset": 3, "hasMore": True,
    }
    saved = await get_progress(session_factory, SYNC_JOB_TYPE, iid, "INSTLINES")
    assert saved.last_offset == 3
    assert saved.payload["plan"]["method"] == "table"

    second = await orchestrator.run_sync(iid, SyncOptions(limit=3))
    assert (second.progress.completed_from, second.progress.next_offset) == (3, 6)

    third = await orchestrator.run_sync(iid, SyncOptions(limit=3))
    assert third.progress.next_offset == 7
    assert third.progress.has_more is False
    assert third.stats.erp_to_app.created == 1

    assert await get_progress(session_factory, SYNC_JOB_TYPE, iid, "INSTLINES") is None
    assert await count(session_factory, ContractLine) == 7

@pytest.mark.asyncio
async def test_drain_repeats_until_offsets_are_consumed(session_factory, seed_integration, fake_connector,
                                                       make_orchestrator, add_rows):
    await add_rows(Contract(inst=10, trdr="55"))
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, rows=[[i, 10, f"ABC{i:04d}"] for i in range(1, 8)])

    result = await drain(make_orchestrator(connector), iid, limit=3)

    assert result.success
    assert result.progress.has_more is False
    assert len([c for c in connector.calls if c[0] == "table"]) == 3
    assert await count(session_factory, ContractLine) == 7

@pytest.mark.asyncio
async def test_full_sync_requires_stored_contracts(session_factory, seed_integration, fake_connector, make_orchestrator):
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, rows=[[1, 10, "A"]])

    result = await make_orchestrator(connector).run_sync(iid, SyncOptions(full_sync=True))

    assert not result.success
    assert result.error_code == "PRECONDITION_FAILED"
    assert "before contract lines" in result.message
    assert connector.calls == [("login",)]
    assert (await integration(session_factory, iid)).last_sync_at is None

@pytest.mark.asyncio
async def test_full_sync_replaces_contract_lines(session_factory, seed_integration, fake_connector,
                                                make_orchestrator, add_rows):
    await add_rows(Contract(inst=10, trdr="55"))
    await add_rows(ContractLine(instlines=500, inst=10, sncode="OLD0001"))
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, rows=[[1, 10, "NEW0001"], [2, 10, "NEW0002"]])

    result = await make_orchestrator(connector).run_sync(iid, SyncOptions(full_sync=True))

    assert result.success
    assert result.stats.erp_to_app.created == 2
    async with session_factory() as db:
        ids = (await db.execute(select(ContractLine.instlines).order_by(ContractLine.instlines))).scalars().all()
    assert ids == [1, 2]

@pytest.mark.asyncio
async def test_per_parent_fetch_survives_a_failing_parent(session_factory, seed_integration, fake_connector,
                                                         make_orchestrator, add_rows):
    await add_rows(Contract(inst=10, trdr="55"), Contract(inst=12, trdr="56"))
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(
        keys=LINE_KEYS,
        per_parent={10: [[1, 10, "AAA1111"]], 12: [[2, 12, "BBB2222"], [3, 12, "CCC3333"]]},
        failing_parents={13},
    )

    result = await make_orchestrator(connector).run_sync(iid, SyncOptions(parent_ids=[10, 12, 13]))

    assert result.success
    assert result.stats.erp_to_app.created == 3
    assert result.progress is None
    assert [c[2] for c in connector.calls if c[0] == "table"] == ["INST=10", "INST=12", "INST=13"]
    [log] = await logs(session_factory, iid)
    assert log.details["failedParents"] == [13]

@pytest.mark.asyncio
async def test_recent_parents_are_taken_from_stored_contracts(session_factory, seed_integration, fake_connector,
                                                              make_orchestrator, add_rows):
    await add_rows(
        Contract(inst=10, trdr="55", wdateto=datetime(2025, 4, 30)),
        Contract(inst=12, trdr="56", wdateto=datetime(2024, 6, 1)),
    )
    iid = await seed_integration("INSTLINES", "INSTLINES", LINE_CONFIG)
    connector = fake_connector(keys=LINE_KEYS, per_parent={10: [[1, 10, "AAA1111"]]})

    result = await make_orchestrator(connector).run_sync(iid, SyncOptions(filter_by_recent_parents=True))

    assert result.stats.erp_to_app.created == 1
    assert [c[2] for c in connector.calls if c[0] == "table"] == ["INST=10"]

# --- Items ---

@pytest.mark.asyncio
async def test_items_without_usable_mtrl_are_skipped(session_factory, seed_integration, fake_connector, make_orchestrator):
    config = {
        "modelMapping": {
            "modelName": "ITEMS",
            "fieldMappings": {"MTRL": "mtrl", "CODE": "code", "NAME": "name"},
            "uniqueIdentifier": {"erpField": "MTRL", "modelField": "mtrl"},
        },
    }
    iid = await seed_integration("ITEMS", "MTRL", config)
    connector = fake_connector(keys=["MTRL", "CODE", "NAME"], rows=[
        ["0159503", "P1", "Monthly pass"],
        ["", "P2", "Blank"],
        ["ABC", "P3", "Broken"],
    ])

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.stats.erp_to_app.created == 1
    assert result.skipped_reasons == {"missing_MTRL": 1, "invalid_MTRL": 1}
    async with session_factory() as db:
        item = await db.get(Item, 159503)
    assert item.mtrl == "0159503"
    assert item.isactive == 1

# --- Failures ---

@pytest.mark.asyncio
async def test_auth_failure_is_logged_and_keeps_watermark(session_factory, seed_integration, fake_connector,
                                                         make_orchestrator):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG, last_sync_at=WATERMARK)
    connector = fake_connector(fail_auth=True)

    result = await make_orchestrator(connector).run_sync(iid)

    assert not result.success
    assert result.error_code == "AUTH_FAILED"
    assert connector.closed
    assert (await integration(session_factory, iid)).last_sync_at == WATERMARK
    [log] = await logs(session_factory, iid)
    assert log.status == "error"
    assert "Invalid credentials" in log.error
    assert log.details["stage"] == "AUTHENTICATE"

@pytest.mark.asyncio
async def test_unusable_encryption_key_is_an_auth_failure(session_factory, seed_integration, fake_connector,
                                                        make_orchestrator, monkeypatch):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", "zz")
    connector = fake_connector()

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.error_code == "AUTH_FAILED"
    assert "Invalid encryption key" in result.message
    assert connector.calls == []

@pytest.mark.asyncio
async def test_non_numeric_app_id_is_a_config_error(session_factory, seed_integration, step_clock):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    async with session_factory() as db:
        stored = await crud.get_integration(db, iid)
        connection = await db.get(SoftOneConnection, stored.connection_id)
        connection.app_id = "abc"
        await db.commit()

    result = await SyncOrchestrator(session_factory, clock=step_clock).run_sync(iid)

    assert result.error_code == "CONFIG_INVALID"
    assert "app_id" in result.message
    [log] = await logs(session_factory, iid)
    assert log.details["stage"] == "AUTHENTICATE"

@pytest.mark.asyncio
async def test_remote_failure_aborts_without_writes(session_factory, seed_integration, fake_connector, make_orchestrator):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    connector = fake_connector(table_error=RemoteError("GetTable failed: HTTP 500", details={"status_code": 500}))

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.error_code == "REMOTE_ERROR"
    assert await count(session_factory, Customer) == 0
    assert (await integration(session_factory, iid)).last_sync_at is None

@pytest.mark.asyncio
async def test_missing_unique_identifier_is_a_config_error(session_factory, seed_integration, fake_connector,
                                                          make_orchestrator):
    config = {"modelMapping": {"modelName": "CUSTOMER", "fieldMappings": {"TRDR": "trdr"}}}
    iid = await seed_integration("CUSTOMER", "TRDR", config)
    connector = fake_connector()

    result = await make_orchestrator(connector).run_sync(iid)

    assert result.error_code == "CONFIG_INVALID"
    assert connector.calls == []

@pytest.mark.asyncio
async def test_unknown_integration(make_orchestrator, fake_connector):
    result = await make_orchestrator(fake_connector()).run_sync("does-not-exist")
    assert result.error_code == "CONFIG_INVALID"

@pytest.mark.asyncio
async def test_run_deadline(session_factory, seed_integration, fake_connector, make_orchestrator):
    iid = await seed_integration("CUSTOMER", "TRDR", CUSTOMER_CONFIG)
    connector = fake_connector(hang=True)

    result = await make_orchestrator(connector).run_sync(iid, timeout=0.2)

    assert result.error_code == "TIMEOUT"
    assert connector.closed
    [log] = await logs(session_factory, iid)
    assert log.details["stage"] == "FETCH"
