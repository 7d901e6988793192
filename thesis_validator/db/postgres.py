from __future__ import annotations

from collections.abc import Callable
from typing import Any

from thesis_validator.errors import TransientIOFailure


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with engagement session injection."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        engagement_id: str | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn) as conn:
                if engagement_id:
                    with conn.cursor() as cur:
                        cur.execute(
                            "SELECT set_config('app.current_engagement', %s, true)",
                            (engagement_id,),
                        )
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.OperationalError as exc:
            raise TransientIOFailure(f"postgres unavailable: {exc}") from exc
