"""
Module: capital_kernel.db.triggers
Responsibility: Installing, removing and verifying the PostgreSQL
    triggers that make ``calculation_events`` append-only.  This is the
    database-level complement to the ORM listeners in
    models/calculation_event.py.
Architecture position: Kernel > DB.  MUST NOT import from models/,
    services/, domain/, or outer layers.

Invariants enforced:
    APPEND_ONLY -- calculation_events rows: no UPDATE, no DELETE, no
    TRUNCATE outside of ``uninstall_immutability_triggers``.

Failure modes:
    - PostgreSQL RAISE EXCEPTION on any violation (surfaced by SQLAlchemy
      as InternalError / DBAPIError).
    - Only PostgreSQL is supported; other dialects are skipped by
      ``create_tables`` and never reach this module.

Audit relevance:
    Even if the ORM layer is bypassed (raw SQL, bulk operations, direct
    psql access), the database rejects modification of stored events.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

ALL_TRIGGER_NAMES = [
    "trg_calculation_event_immutability_update",
    "trg_calculation_event_immutability_delete",
]

INSTALL_SQL = """
CREATE OR REPLACE FUNCTION prevent_calculation_event_mutation()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION USING
        MESSAGE = 'Calculation event ' || OLD.id || ' is immutable: ' || TG_OP || ' rejected',
        ERRCODE = 'integrity_constraint_violation';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS trg_calculation_event_immutability_update ON calculation_events;
CREATE TRIGGER trg_calculation_event_immutability_update
    BEFORE UPDATE ON calculation_events
    FOR EACH ROW EXECUTE FUNCTION prevent_calculation_event_mutation();

DROP TRIGGER IF EXISTS trg_calculation_event_immutability_delete ON calculation_events;
CREATE TRIGGER trg_calculation_event_immutability_delete
    BEFORE DELETE ON calculation_events
    FOR EACH ROW EXECUTE FUNCTION prevent_calculation_event_mutation();
"""

DROP_SQL = """
DROP TRIGGER IF EXISTS trg_calculation_event_immutability_update ON calculation_events;
DROP TRIGGER IF EXISTS trg_calculation_event_immutability_delete ON calculation_events;
DROP FUNCTION IF EXISTS prevent_calculation_event_mutation();
"""


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level immutability triggers.

    Preconditions: Tables must exist. Engine must be connected to PostgreSQL.
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed.
        Re-running is safe (CREATE OR REPLACE / DROP IF EXISTS).
    """
    with engine.connect() as conn:
        conn.execute(text(INSTALL_SQL))
        conn.commit()


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level immutability triggers.

    WARNING: Only for tearing down test databases.  Leaving the triggers
    uninstalled in production removes the second immutability layer.
    """
    with engine.connect() as conn:
        conn.execute(text(DROP_SQL))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the immutability triggers currently present, sorted by name."""
    trigger_list = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    check_sql = f"""
    SELECT tgname FROM pg_trigger
    WHERE tgname IN ({trigger_list})
    ORDER BY tgname;
    """

    with engine.connect() as conn:
        result = conn.execute(text(check_sql))
        return [row[0] for row in result]


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger in ALL_TRIGGER_NAMES is installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
