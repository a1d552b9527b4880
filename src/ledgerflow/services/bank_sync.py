from datetime import timedelta

from pydantic import BaseModel

from ledgerflow.categorization.pipeline import CategorizationPipeline, PipelineResult
from ledgerflow.errors import NotFoundError, ServiceUnavailableError, ValidationError
from ledgerflow.integration.akahu import AkahuClient
from ledgerflow.logger import get_logger
from ledgerflow.models import (
    BankConnection,
    BankSyncLog,
    ConnectionStatus,
    SyncStatus,
    Transaction,
    TransactionSource,
    TransactionStatus,
    utcnow,
)
from ledgerflow.services.access import AccountAccess
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)

# Re-read a little history so late-posting transactions are not missed.
SYNC_OVERLAP = timedelta(days=7)


class SyncResult(BaseModel):
    log: BankSyncLog
    categorization: PipelineResult | None = None


class BankSyncService:
    def __init__(
        self,
        store: Store,
        access: AccountAccess,
        client: AkahuClient,
        pipeline: CategorizationPipeline,
    ) -> None:
        self.store = store
        self.access = access
        self.client = client
        self.pipeline = pipeline

    def get(self, user_id: str, connection_id: int) -> BankConnection:
        connection = self.store.connections.get(connection_id)
        if connection is None or connection.user_id != user_id:
            raise NotFoundError.for_entity("Bank connection", connection_id)
        return connection

    def list_connections(self, user_id: str) -> list[BankConnection]:
        return self.store.connections.find(
            lambda c: c.user_id == user_id and c.status != ConnectionStatus.DISCONNECTED
        )

    def create(self, user_id: str, connection: BankConnection) -> BankConnection:
        self.access.owned_account(user_id, connection.account_id)
        if not connection.external_account_id.strip():
            raise ValidationError("External account id is required")
        existing = self.store.connections.find(
            lambda c: c.account_id == connection.account_id and c.status == ConnectionStatus.ACTIVE
        )
        if existing:
            raise ValidationError(f"Account {connection.account_id} already has an active bank connection")
        connection.user_id = user_id
        return self.store.connections.add(connection)

    def disconnect(self, user_id: str, connection_id: int) -> None:
        connection = self.get(user_id, connection_id)
        connection.status = ConnectionStatus.DISCONNECTED
        connection.access_token = None
        self.store.connections.update(connection)

    def logs(self, user_id: str, connection_id: int) -> list[BankSyncLog]:
        connection = self.get(user_id, connection_id)
        logs = self.store.sync_logs.find(lambda log: log.connection_id == connection.id)
        return sorted(logs, key=lambda log: log.started_at, reverse=True)

    async def sync(self, user_id: str, connection_id: int) -> SyncResult:
        connection = self.get(user_id, connection_id)
        if connection.status == ConnectionStatus.DISCONNECTED:
            raise ValidationError(f"Bank connection {connection_id} is disconnected")
        if not connection.access_token:
            raise ValidationError(f"Bank connection {connection_id} has no access token")

        log = self.store.sync_logs.add(BankSyncLog(connection_id=connection.id))
        start = connection.last_synced_at - SYNC_OVERLAP if connection.last_synced_at else None
        try:
            bank_lines = await self.client.get_transactions(
                connection.access_token,
                connection.external_account_id,
                start=start,
            )
        except ServiceUnavailableError as e:
            log.status = SyncStatus.FAILED
            log.error_message = e.message
            log.finished_at = utcnow()
            self.store.sync_logs.update(log)
            connection.status = ConnectionStatus.ERROR
            self.store.connections.update(connection)
            raise

        created: list[int] = []
        for bank in bank_lines:
            if bank.external_id and self.store.transactions.find_by_external_id(
                connection.account_id, bank.external_id
            ):
                log.skipped_count += 1
                continue
            txn = self.store.transactions.add(Transaction(
                user_id=user_id,
                account_id=connection.account_id,
                amount=bank.amount,
                transaction_date=bank.transaction_date,
                description=bank.display_description,
                status=TransactionStatus.CLEARED,
                source=TransactionSource.BANK_API,
                bank_category=bank.category,
                external_id=bank.external_id,
                reference_number=bank.reference,
            ))
            created.append(txn.id)

        log.imported_count = len(created)
        log.status = SyncStatus.SUCCESS
        log.finished_at = utcnow()
        self.store.sync_logs.update(log)
        connection.status = ConnectionStatus.ACTIVE
        connection.last_synced_at = log.finished_at
        self.store.connections.update(connection)
        logger.info(
            "[SYNC] Connection %s: %s imported, %s skipped.",
            connection.id,
            log.imported_count,
            log.skipped_count,
        )

        categorization = await self.pipeline.process(user_id, created) if created else None
        return SyncResult(log=log, categorization=categorization)
