#!/usr/bin/env python3
"""ControlHarmonizer — database check after migration.

Run from backend/ (with the venv active):
    python ../scripts/verify_db.py

Checks:
  1. Connection (DATABASE_URL from .env)
  2. Tables required by the models
  3. Alembic version
  4. Catalog contents (controls per framework)
  5. Mapping consistency (normalized pairs, no self-mappings, no orphans)
"""
import asyncio
import os
import sys
from pathlib import Path

# Make backend/ importable
backend_dir = Path(__file__).resolve().parent.parent / "backend"
sys.path.insert(0, str(backend_dir))
os.chdir(str(backend_dir))

# Parse .env
env_file = backend_dir / ".env"
if env_file.exists():
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if "=" in line and not line.startswith("#"):
            key, val = line.split("=", 1)
            os.environ.setdefault(key.strip(), val.strip())


GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
NC = "\033[0m"


def ok(msg):
    print(f"  {GREEN}[OK]{NC} {msg}")

def fail(msg):
    print(f"  {RED}[FAIL]{NC} {msg}")

def warn(msg):
    print(f"  {YELLOW}[!]{NC} {msg}")

def step(msg):
    print(f"\n{BLUE}=== {msg} ==={NC}")


REQUIRED_TABLES = ["controls", "control_mappings", "alembic_version"]

EXPECTED_REVISION = "001_control_harmonization"

CONSISTENCY_CHECKS = [
    ("self-mappings",
     "SELECT COUNT(*) FROM control_mappings WHERE source_control_id = target_control_id"),
    ("pairs not normalized",
     "SELECT COUNT(*) FROM control_mappings WHERE pair_low > pair_high"),
    ("orphaned mappings",
     "SELECT COUNT(*) FROM control_mappings m "
     "LEFT JOIN controls s ON s.id = m.source_control_id "
     "LEFT JOIN controls t ON t.id = m.target_control_id "
     "WHERE s.id IS NULL OR t.id IS NULL"),
]


async def main():
    from sqlalchemy import inspect, text
    from sqlalchemy.ext.asyncio import create_async_engine

    db_url = os.environ.get("DATABASE_URL", "")
    if not db_url:
        fail("DATABASE_URL is not set in .env")
        sys.exit(1)

    engine = create_async_engine(db_url)
    errors = 0

    step("1. Connection")
    print(f"  URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        ok("Connection OK")
    except Exception as e:
        fail(f"Cannot connect: {e}")
        sys.exit(1)

    async with engine.connect() as conn:
        # ── 2. Tables ──
        step("2. Tables")
        existing_tables = set(await conn.run_sync(lambda c: inspect(c).get_table_names()))
        print(f"  Found {len(existing_tables)} tables")
        missing = [t for t in REQUIRED_TABLES if t not in existing_tables]
        if missing:
            fail(f"Missing tables ({len(missing)}): {', '.join(missing)}")
            errors += len(missing)
        else:
            ok(f"All {len(REQUIRED_TABLES)} required tables exist")

        # ── 3. Alembic ──
        step("3. Alembic version")
        try:
            ver = (await conn.execute(text("SELECT version_num FROM alembic_version"))).scalar() or "EMPTY"
            if ver == EXPECTED_REVISION:
                ok(f"Alembic: {ver} (latest)")
            else:
                warn(f"Alembic: {ver} (expected: {EXPECTED_REVISION})")
        except Exception as e:
            fail(f"alembic_version: {e}")
            errors += 1

        # ── 4. Catalog ──
        step("4. Catalog")
        try:
            rows = (await conn.execute(text(
                "SELECT framework, COUNT(*) FROM controls GROUP BY framework ORDER BY framework"
            ))).all()
            if not rows:
                warn("controls: empty catalog")
            for framework, count in rows:
                ok(f"{framework}: {count} controls")
        except Exception as e:
            fail(f"controls: {e}")
            errors += 1

        # ── 5. Mappings ──
        step("5. Mappings")
        try:
            total = (await conn.execute(text("SELECT COUNT(*) FROM control_mappings"))).scalar()
            ok(f"control_mappings: {total} rows")
            for label, sql in CONSISTENCY_CHECKS:
                count = (await conn.execute(text(sql))).scalar()
                if count:
                    fail(f"{label}: {count}")
                    errors += 1
                else:
                    ok(f"no {label}")
        except Exception as e:
            fail(f"control_mappings: {e}")
            errors += 1

    await engine.dispose()

    # ── Summary ──
    step("Summary")
    if errors == 0:
        ok("Database is in good shape!")
    else:
        fail(f"Found {errors} problems that need fixing")

    return errors


if __name__ == "__main__":
    errors = asyncio.run(main())
    sys.exit(1 if errors > 0 else 0)
