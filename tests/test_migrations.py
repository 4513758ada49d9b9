from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.backoffice.models import Base

ROOT = Path(__file__).resolve().parents[1]


def _config(url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_baseline_migration_matches_models(tmp_path):
    url = f"sqlite:///{tmp_path/'migrated.db'}"
    cfg = _config(url)
    command.upgrade(cfg, "head")

    engine = create_engine(url)
    try:
        insp = inspect(engine)
        assert set(insp.get_table_names()) - {"alembic_version"} == set(Base.metadata.tables)

        for name, table in Base.metadata.tables.items():
            reflected = {c["name"]: c for c in insp.get_columns(name)}
            assert set(reflected) == {c.name for c in table.columns}, name
            for column in table.columns:
                if column.primary_key:
                    continue
                assert reflected[column.name]["nullable"] == column.nullable, f"{name}.{column.name}"

            index_names = {ix["name"] for ix in insp.get_indexes(name)}
            assert {ix.name for ix in table.indexes} <= index_names, name

            fk_targets = {(fk["referred_table"], tuple(fk["constrained_columns"])) for fk in insp.get_foreign_keys(name)}
            for fk in table.foreign_keys:
                assert (fk.column.table.name, (fk.parent.name,)) in fk_targets, f"{name}.{fk.parent.name}"

        check_names = {ck["name"] for ck in insp.get_check_constraints("support_tickets")}
        assert {"ck_support_tickets_status", "ck_support_tickets_priority"} <= check_names
    finally:
        engine.dispose()

    command.downgrade(cfg, "base")
    engine = create_engine(url)
    try:
        assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    finally:
        engine.dispose()
