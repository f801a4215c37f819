"""queue status safety net: correct out-of-vocabulary statuses on write

Revision ID: 0002_queue_status_safety_net
Revises: 0001_init
Create Date: 2026-10-18 12:30:00.000000
"""
from alembic import op

revision = "0002_queue_status_safety_net"
down_revision = "0001_init"
branch_labels = None
depends_on = None

VALID = "('waiting','serving','processing','completed','cancelled')"


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        # other backends rely on the ORM before_insert/before_update hook
        return

    # ---------- 1) fold case/whitespace, then fix what is still unknown ----------
    op.execute(f"""
    UPDATE queue_entries
       SET status = LOWER(TRIM(status))
     WHERE status NOT IN {VALID}
       AND LOWER(TRIM(status)) IN {VALID};
    """)
    op.execute(f"""
    UPDATE queue_entries
       SET remarks = COALESCE(remarks || ' | ', '') ||
                     'Status auto-corrected from "' || status || '" to "waiting"',
           status = 'waiting'
     WHERE status NOT IN {VALID};
    """)

    # ---------- 2) validation function ----------
    op.execute(f"""
    CREATE OR REPLACE FUNCTION validate_queue_status(input_status TEXT)
    RETURNS TEXT AS $$
    DECLARE
        folded TEXT := LOWER(TRIM(COALESCE(input_status, '')));
    BEGIN
        IF folded IN {VALID} THEN
            RETURN folded;
        END IF;
        RAISE WARNING 'Unknown queue status "%" encountered, falling back to "waiting"', input_status;
        RETURN 'waiting';
    END;
    $$ LANGUAGE plpgsql IMMUTABLE;
    """)

    # ---------- 3) trigger on every write ----------
    op.execute("""
    CREATE OR REPLACE FUNCTION validate_queue_status_trigger()
    RETURNS TRIGGER AS $$
    DECLARE
        corrected TEXT := validate_queue_status(NEW.status);
    BEGIN
        IF corrected = 'waiting' AND LOWER(TRIM(COALESCE(NEW.status, ''))) <> 'waiting' THEN
            NEW.remarks := COALESCE(NEW.remarks || ' | ', '') ||
                           'Status auto-corrected from "' || COALESCE(NEW.status, 'NULL') || '" to "waiting"';
        END IF;
        NEW.status := corrected;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
    """)
    op.execute("""
    DROP TRIGGER IF EXISTS validate_queue_status_before_change ON queue_entries;
    CREATE TRIGGER validate_queue_status_before_change
        BEFORE INSERT OR UPDATE OF status ON queue_entries
        FOR EACH ROW
        EXECUTE FUNCTION validate_queue_status_trigger();
    """)


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP TRIGGER IF EXISTS validate_queue_status_before_change ON queue_entries;")
    op.execute("DROP FUNCTION IF EXISTS validate_queue_status_trigger();")
    op.execute("DROP FUNCTION IF EXISTS validate_queue_status(TEXT);")
