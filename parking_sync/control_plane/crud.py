from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from parking_sync.security.crypto import encrypt_secret
from .models_erp import SoftOneConnection, SoftOneIntegration
from .models_parking import Contract, ContractLine

async def create_connection(db: AsyncSession, *, user_id: str, name: str, username: str, password: str,
                            app_id: str, base_url: Optional[str] = None, **login_params):
    db_conn = SoftOneConnection(
        user_id=user_id,
        name=name,
        username=username,
        password_encrypted=encrypt_secret(password),
        app_id=app_id,
        base_url=base_url,
        **login_params,
    )
    db.add(db_conn)
    await db.commit()
    await db.refresh(db_conn)
    return db_conn

async def get_connection(db: AsyncSession, connection_id: str):
    result = await db.execute(select(SoftOneConnection).where(SoftOneConnection.id == connection_id))
    return result.scalars().first()

async def create_integration(db: AsyncSession, *, user_id: str, name: str, connection_id: str,
                             object_name: str, table_name: str, config: Dict[str, Any],
                             table_dbname: Optional[str] = None, last_sync_at: Optional[datetime] = None):
    db_integration = SoftOneIntegration(
        user_id=user_id,
        name=name,
        connection_id=connection_id,
        object_name=object_name,
        table_name=table_name,
        table_dbname=table_dbname,
        config_json=config,
        last_sync_at=last_sync_at,
    )
    db.add(db_integration)
    await db.commit()
    await db.refresh(db_integration)
    return db_integration

async def get_integration(db: AsyncSession, integration_id: str):
    result = await db.execute(select(SoftOneIntegration).where(SoftOneIntegration.id == integration_id))
    return result.scalars().first()

async def set_watermark(db: AsyncSession, integration_id: str, value: datetime):
    integration = await get_integration(db, integration_id)
    if integration is None:
        return None
    integration.last_sync_at = value
    integration.updated_at = value
    await db.commit()
    return integration

async def count_contracts(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(Contract))
    return result.scalar_one()

async def delete_contract_lines(db: AsyncSession) -> int:
    result = await db.execute(delete(ContractLine))
    await db.commit()
    return result.rowcount or 0

async def recent_contract_ids(db: AsyncSession, since: datetime) -> List[int]:
    result = await db.execute(select(Contract.inst).where(Contract.wdateto >= since).order_by(Contract.inst))
    return list(result.scalars().all())
