"""
inventory/store.py -- SQLAlchemy-backed record store for the ServiceMap inventory.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in
inventory/models.py remain the authoritative domain representation. Swapping
SQLite for PostgreSQL is a connection string change, not a rewrite.

Two layers live here:

  OpContext      -- one logical operation's handle on the store. Opened per
                    request (or per sweep iteration), optionally
                    transactional, always released on exit. Engine functions
                    in assets.py / hosts.py / search.py / lifecycle.py take
                    it as their first argument; nothing reaches the engine
                    through module globals.
  InventoryStore -- owns the Engine and schema, hands out OpContexts, and
                    provides the seed/read helpers used by the API, CLI and
                    tests for tables this engine does not own (system groups,
                    risk assessments, owners, compliance scores).

Security: all queries use bound parameters. No f-strings in SQL.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision, so lexical comparison in SQL matches chronological order.

Usage:
    store = InventoryStore("sqlite:///servicemap.db")      # SQLite; default from Settings
    store = InventoryStore("postgresql://user:pw@host/db") # PostgreSQL
    with store.operation(use_transaction=True, remote_host="10.0.0.5") as op:
        service = resolve_host(op, "web1.example.com", 90)
    store.close()
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    false,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from inventory.errors import StoreError
from inventory.models import Host, HostMatchRule, Indicator, Owner, RRAService, SystemGroup

logger = logging.getLogger("servicemap.inventory")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

sysgroup_table = Table(
    "sysgroup",
    metadata,
    Column("sysgroupid", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("environment", String(50), nullable=False, server_default=""),
)

techowner_table = Table(
    "techowners",
    metadata,
    Column("techownerid", Integer, primary_key=True, autoincrement=True),
    Column("techowner", String(255), nullable=False, unique=True),
)

assetowner_table = Table(
    "assetowners",
    metadata,
    Column("ownerid", Integer, primary_key=True, autoincrement=True),
    Column("operator", String(255), nullable=False),
    Column("team", String(255), nullable=False),
    Column("triagekey", String(255), nullable=False, server_default=""),
    UniqueConstraint("operator", "team", name="uq_assetowner"),
)

asset_table = Table(
    "asset",
    metadata,
    Column("assetid", Integer, primary_key=True, autoincrement=True),
    Column("assettype", String(100), nullable=False),
    Column("name", String(255), nullable=False),
    Column("zone", String(100), nullable=False),
    Column("assetgroupid", Integer),
    Column("ownerid", Integer, ForeignKey("assetowners.ownerid")),
    Column("triageoverride", String(255)),
    Column("lastindicator", String(32), nullable=False),
    UniqueConstraint("assettype", "name", "zone", name="uq_asset_key"),
)

indicator_table = Table(
    "indicator",
    metadata,
    Column("indicatorid", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False),
    Column("event_source", String(255), nullable=False),
    Column("likelihood_indicator", Integer, nullable=False),
    Column("assetid", Integer, ForeignKey("asset.assetid"), nullable=False),
    Column("details", Text),  # JSON document serialized as text
    Index("ix_indicator_asset_source", "assetid", "event_source", "timestamp"),
)

host_table = Table(
    "host",
    metadata,
    Column("hostid", Integer, primary_key=True, autoincrement=True),
    Column("hostname", String(255), nullable=False),
    Column("sysgroupid", Integer, ForeignKey("sysgroup.sysgroupid")),
    Column("comment", Text),
    Column("dynamic", Boolean, nullable=False, server_default=false()),
    Column("dynamic_confidence", Integer),
    Column("dynamic_added", String(32)),
    Column("lastused", String(32)),
    Column("techownerid", Integer, ForeignKey("techowners.techownerid")),
    Column("requiretcw", Boolean),
)

# Host identity is case-insensitive: one row per lower(hostname), static or dynamic.
Index("uq_host_hostname_lower", func.lower(host_table.c.hostname), unique=True)

hostmatch_table = Table(
    "hostmatch",
    metadata,
    Column("hostmatchid", Integer, primary_key=True, autoincrement=True),
    Column("expression", Text, nullable=False),
    Column("sysgroupid", Integer, ForeignKey("sysgroup.sysgroupid"), nullable=False),
    Column("comment", Text),
)

# (column name, RRAService field) for the impact and probability matrices.
RRA_MATRIX_COLUMNS: tuple[tuple[str, str], ...] = (
    ("ari", "avail_rep_impact"),
    ("api", "avail_prd_impact"),
    ("afi", "avail_fin_impact"),
    ("cri", "confi_rep_impact"),
    ("cpi", "confi_prd_impact"),
    ("cfi", "confi_fin_impact"),
    ("iri", "integ_rep_impact"),
    ("ipi", "integ_prd_impact"),
    ("ifi", "integ_fin_impact"),
    ("arp", "avail_rep_prob"),
    ("app", "avail_prd_prob"),
    ("afp", "avail_fin_prob"),
    ("crp", "confi_rep_prob"),
    ("cpp", "confi_prd_prob"),
    ("cfp", "confi_fin_prob"),
    ("irp", "integ_rep_prob"),
    ("ipp", "integ_prd_prob"),
    ("ifp", "integ_fin_prob"),
)

rra_table = Table(
    "rra",
    metadata,
    Column("rraid", Integer, primary_key=True, autoincrement=True),
    Column("service", String(255), nullable=False),
    *[Column(col, String(50), nullable=False, server_default="") for col, _ in RRA_MATRIX_COLUMNS],
    Column("datadefault", String(50), nullable=False, server_default=""),
)

rra_sysgroup_table = Table(
    "rra_sysgroup",
    metadata,
    Column("rraid", Integer, ForeignKey("rra.rraid"), nullable=False),
    Column("sysgroupid", Integer, ForeignKey("sysgroup.sysgroupid"), nullable=False),
    UniqueConstraint("rraid", "sysgroupid", name="uq_rra_sysgroup"),
)

searchresult_table = Table(
    "searchresults",
    metadata,
    Column("searchresultid", Integer, primary_key=True, autoincrement=True),
    Column("opid", String(36), nullable=False),
    Column("identifier", String(255), nullable=False),
    Column("result", Text, nullable=False),  # JSON-serialized Service
    Column("timestamp", String(32), nullable=False),
    UniqueConstraint("opid", "identifier", name="uq_searchresult"),
)

compscore_table = Table(
    "compscore",
    metadata,
    Column("scoreid", Integer, primary_key=True, autoincrement=True),
    Column("hostid", Integer, ForeignKey("host.hostid"), nullable=False),
    Column("checkref", String(255), nullable=False),
    Column("status", Boolean, nullable=False),
    Column("timestamp", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(value: Union[datetime, str]) -> str:
    """Normalize a datetime or ISO 8601 string to the stored UTC form.

    Naive values are treated as UTC and a trailing "Z" is accepted. Raises
    ValueError for unparseable strings.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text_value = value.strip()
        if text_value.endswith(("Z", "z")):
            text_value = text_value[:-1] + "+00:00"
        dt = datetime.fromisoformat(text_value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes the dependent-row
    ordering of the dynamic host sweep (compscore before host) observable
    in SQLite exactly as it is in PostgreSQL.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Operation context
# ---------------------------------------------------------------------------


class OpContext:
    """A single logical operation against the store.

    Non-transactional contexts commit after every statement. Transactional
    contexts commit when the with-block exits cleanly and roll back when it
    raises. Either way the connection goes back to the pool on exit.

    opid doubles as the search batch identifier, so results written inside a
    transactional context become visible under opid only on commit.
    """

    def __init__(self, engine: Engine, use_transaction: bool = False, remote_host: str = "") -> None:
        self.opid = str(uuid.uuid4())
        self.remote_host = remote_host
        self.use_transaction = use_transaction
        self._engine = engine
        self._conn: Optional[Connection] = None
        self._tx = None

    def __enter__(self) -> "OpContext":
        try:
            self._conn = self._engine.connect()
            if self.use_transaction:
                self._tx = self._conn.begin()
        except SQLAlchemyError as exc:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise StoreError(detail=str(exc)) from exc
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if self._tx is not None:
                if exc_type is None:
                    self._tx.commit()
                else:
                    self._tx.rollback()
                    self.log("transaction rolled back (%s)", exc_type.__name__)
        except SQLAlchemyError as tx_exc:
            raise StoreError(detail=str(tx_exc)) from tx_exc
        finally:
            if self._conn is not None:
                self._conn.close()
            self._conn = None
            self._tx = None
        return False

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def log(self, msg: str, *args: Any, level: int = logging.INFO) -> None:
        """Log with the [opid:client] prefix that ties lines to one operation."""
        logger.log(level, "[%s:%s] " + msg, self.opid, self.remote_host or "none", *args)

    def _run(self, stmt, consume: Callable[[Any], Any]) -> Any:
        if self._conn is None:
            raise RuntimeError("OpContext used outside its with-block")
        try:
            result = self._conn.execute(stmt)
            value = consume(result)
            if self._tx is None:
                self._conn.commit()
        except SQLAlchemyError as exc:
            if self._tx is None:
                self._conn.rollback()
            raise StoreError(detail=str(exc)) from exc
        return value

    def rows(self, stmt) -> list[Row]:
        return self._run(stmt, lambda r: r.fetchall())

    def first(self, stmt) -> Optional[Row]:
        return self._run(stmt, lambda r: r.first())

    def scalar(self, stmt) -> Any:
        return self._run(stmt, lambda r: r.scalar())

    def execute(self, stmt) -> int:
        """Run a DML statement and return the affected row count."""
        return self._run(stmt, lambda r: r.rowcount)

    def insert(self, stmt) -> int:
        """Run an INSERT and return the generated primary key."""
        return self._run(stmt, lambda r: r.inserted_primary_key[0])

    def insert_if_absent(self, table: Table, values: dict) -> Optional[int]:
        """Atomically insert a row unless a unique key already holds one.

        Returns the new primary key, or None when the key is already claimed
        (by an earlier row or a concurrent writer); callers reload in that case.
        Uses INSERT ... ON CONFLICT DO NOTHING RETURNING, so there is no window
        between the existence check and the insert.
        """
        if self.dialect == "postgresql":
            stmt = pg_insert(table)
        elif self.dialect == "sqlite":
            stmt = sqlite_insert(table)
        else:
            raise StoreError(detail=f"insert-if-absent is not supported on {self.dialect}")
        pk = list(table.primary_key.columns)[0]
        stmt = stmt.values(**values).on_conflict_do_nothing().returning(pk)
        return self._run(stmt, lambda r: r.scalar_one_or_none())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class InventoryStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in FastAPI's thread pool, so a pooled SQLite
            # connection may be used from a thread other than its creator.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    def operation(self, use_transaction: bool = False, remote_host: str = "") -> OpContext:
        """Return a new OpContext; use it as a context manager."""
        return OpContext(self.engine, use_transaction=use_transaction, remote_host=remote_host)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("database ping failed")
            return False
        return True

    # ------------------------------------------------------------------
    # System groups and risk assessments
    # ------------------------------------------------------------------

    def create_sysgroup(self, group: SystemGroup) -> int:
        """Insert a system group and return its ID."""
        with self.operation() as op:
            return op.insert(sysgroup_table.insert().values(name=group.name, environment=group.environment))

    def list_sysgroups(self) -> list[SystemGroup]:
        """Return all system groups ordered by name."""
        with self.operation() as op:
            rows = op.rows(select(sysgroup_table).order_by(sysgroup_table.c.name, sysgroup_table.c.sysgroupid))
        return [row_to_sysgroup(r) for r in rows]

    def get_sysgroup(self, sysgroup_id: int) -> Optional[SystemGroup]:
        """Fetch a single system group by ID. Returns None if not found."""
        with self.operation() as op:
            row = op.first(select(sysgroup_table).where(sysgroup_table.c.sysgroupid == sysgroup_id))
        return row_to_sysgroup(row) if row is not None else None

    def create_rra(self, rra: RRAService, sysgroup_ids: list[int]) -> int:
        """Insert a risk assessment and link it to the given system groups.

        The insert and the links are written in one transaction.
        """
        values = {col: getattr(rra, attr) for col, attr in RRA_MATRIX_COLUMNS}
        with self.operation(use_transaction=True) as op:
            rra_id = op.insert(
                rra_table.insert().values(service=rra.name, datadefault=rra.default_data, **values)
            )
            for sysgroup_id in sysgroup_ids:
                op.execute(rra_sysgroup_table.insert().values(rraid=rra_id, sysgroupid=sysgroup_id))
        return rra_id

    def list_rras(self) -> list[RRAService]:
        """Return all risk assessments ordered by service name."""
        with self.operation() as op:
            rows = op.rows(select(rra_table).order_by(rra_table.c.service, rra_table.c.rraid))
        return [row_to_rra(r) for r in rows]

    def get_rra(self, rra_id: int) -> Optional[RRAService]:
        """Fetch a single risk assessment by ID. Returns None if not found."""
        with self.operation() as op:
            row = op.first(select(rra_table).where(rra_table.c.rraid == rra_id))
        return row_to_rra(row) if row is not None else None

    def sysgroups_for_rra(self, rra_id: int) -> list[SystemGroup]:
        """Return the system groups linked to a risk assessment, ordered by ID."""
        linked = select(rra_sysgroup_table.c.sysgroupid).where(rra_sysgroup_table.c.rraid == rra_id)
        with self.operation() as op:
            rows = op.rows(
                select(sysgroup_table)
                .where(sysgroup_table.c.sysgroupid.in_(linked))
                .order_by(sysgroup_table.c.sysgroupid)
            )
        return [row_to_sysgroup(r) for r in rows]

    # ------------------------------------------------------------------
    # Hosts and host match rules
    # ------------------------------------------------------------------

    def create_techowner(self, name: str) -> int:
        with self.operation() as op:
            return op.insert(techowner_table.insert().values(techowner=name))

    def create_host(self, host: Host) -> int:
        """Insert a host row and return its ID.

        last_used defaults to now. Raises StoreError if another row already
        holds the same hostname (compared case-insensitively).
        """
        now = now_iso()
        with self.operation() as op:
            return op.insert(
                host_table.insert().values(
                    hostname=host.hostname,
                    sysgroupid=host.sysgroup_id,
                    comment=host.comment,
                    dynamic=host.dynamic,
                    dynamic_confidence=host.dynamic_confidence,
                    dynamic_added=host.dynamic_added or (now if host.dynamic else None),
                    lastused=host.last_used or now,
                    techownerid=host.techowner_id,
                    requiretcw=host.requiretcw,
                )
            )

    def get_host(self, hostname: str) -> Optional[Host]:
        """Look up a host by case-insensitive hostname. Returns None if not found."""
        with self.operation() as op:
            row = op.first(select(host_table).where(func.lower(host_table.c.hostname) == hostname.lower()))
        return row_to_host(row) if row is not None else None

    def hosts_for_sysgroup(self, sysgroup_id: int) -> list[Host]:
        """Return hosts statically assigned to a system group, ordered by hostname."""
        with self.operation() as op:
            rows = op.rows(
                select(host_table).where(host_table.c.sysgroupid == sysgroup_id).order_by(host_table.c.hostname)
            )
        return [row_to_host(r) for r in rows]

    def create_hostmatch(self, rule: HostMatchRule) -> int:
        with self.operation() as op:
            return op.insert(
                hostmatch_table.insert().values(
                    expression=rule.expression, sysgroupid=rule.sysgroup_id, comment=rule.comment
                )
            )

    def hostmatch_for_sysgroup(self, sysgroup_id: int) -> list[HostMatchRule]:
        with self.operation() as op:
            rows = op.rows(
                select(hostmatch_table)
                .where(hostmatch_table.c.sysgroupid == sysgroup_id)
                .order_by(hostmatch_table.c.hostmatchid)
            )
        return [row_to_hostmatch(r) for r in rows]

    # ------------------------------------------------------------------
    # Ownership and compliance scores (written by other subsystems)
    # ------------------------------------------------------------------

    def create_owner(self, owner: Owner) -> int:
        with self.operation() as op:
            return op.insert(
                assetowner_table.insert().values(
                    operator=owner.operator, team=owner.team, triagekey=owner.triage_key
                )
            )

    def assign_asset_owner(self, asset_id: int, owner_id: Optional[int], triage_override: Optional[str] = None) -> bool:
        """Set owner and triage override on an asset. Returns False if asset_id was not found."""
        with self.operation() as op:
            count = op.execute(
                asset_table.update()
                .where(asset_table.c.assetid == asset_id)
                .values(ownerid=owner_id, triageoverride=triage_override)
            )
        return count > 0

    def create_compscore(self, host_id: int, checkref: str, status: bool = True) -> int:
        with self.operation() as op:
            return op.insert(
                compscore_table.insert().values(hostid=host_id, checkref=checkref, status=status, timestamp=now_iso())
            )

    def count_compscores(self, host_id: int) -> int:
        with self.operation() as op:
            return op.scalar(select(func.count()).select_from(compscore_table).where(compscore_table.c.hostid == host_id))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def row_to_sysgroup(row) -> SystemGroup:
    return SystemGroup(id=row.sysgroupid, name=row.name, environment=row.environment)


def row_to_rra(row) -> RRAService:
    matrix = {attr: getattr(row, col) or "" for col, attr in RRA_MATRIX_COLUMNS}
    return RRAService(name=row.service, id=row.rraid, default_data=row.datadefault or "", **matrix)


def row_to_host(row) -> Host:
    return Host(
        id=row.hostid,
        hostname=row.hostname,
        sysgroup_id=row.sysgroupid,
        comment=row.comment or "",
        dynamic=bool(row.dynamic),
        dynamic_confidence=row.dynamic_confidence,
        dynamic_added=row.dynamic_added,
        last_used=row.lastused,
        techowner_id=row.techownerid,
        requiretcw=None if row.requiretcw is None else bool(row.requiretcw),
    )


def row_to_hostmatch(row) -> HostMatchRule:
    return HostMatchRule(
        id=row.hostmatchid,
        expression=row.expression,
        sysgroup_id=row.sysgroupid,
        comment=row.comment or "",
    )


def row_to_indicator(row) -> Indicator:
    return Indicator(
        id=row.indicatorid,
        asset_id=row.assetid,
        timestamp=row.timestamp,
        event_source=row.event_source,
        likelihood=row.likelihood_indicator,
        details=json.loads(row.details) if row.details else None,
    )


def row_to_owner(row) -> Owner:
    return Owner(id=row.ownerid, operator=row.operator, team=row.team, triage_key=row.triagekey or "")
