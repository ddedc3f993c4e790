from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from engine.errors import PositionClosed
from engine.models import Order, Position, Signal, new_id

_SETTINGS_COLUMNS = (
    "auto_trade_enabled",
    "max_daily_trades",
    "max_daily_loss",
    "max_position_size",
    "trading_hours_start",
    "trading_hours_end",
    "timezone",
)
_SIGNAL_COLUMNS = (
    "id",
    "user_id",
    "watchlist_id",
    "signal_rule_id",
    "symbol",
    "signal_type",
    "price_at_signal",
    "bb_upper",
    "bb_lower",
    "bb_middle",
    "vwap",
    "volume",
    "bar_ts",
    "triggered_at",
    "executed",
)
_ORDER_COLUMNS = (
    "id",
    "user_id",
    "signal_id",
    "broker_order_id",
    "symbol",
    "side",
    "quantity",
    "limit_price",
    "filled_price",
    "status",
    "strategy",
    "trailing_stop_percent",
    "stop_loss_price",
    "take_profit_price",
    "created_at",
    "updated_at",
)
_POSITION_COLUMNS = (
    "id",
    "user_id",
    "order_id",
    "symbol",
    "quantity",
    "avg_cost",
    "current_price",
    "unrealized_pnl",
    "trailing_stop_percent",
    "trailing_stop_price",
    "stop_loss_price",
    "take_profit_price",
    "is_open",
    "opened_at",
    "closed_at",
    "close_reason",
)


class BaseStore:
    def save_trading_settings(self, user_id: str, **fields: Any) -> None:
        raise NotImplementedError

    def get_trading_settings(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_trading_settings(self, auto_trade_only: bool = True) -> list[dict[str, Any]]:
        raise NotImplementedError

    def add_watchlist_item(
        self,
        user_id: str,
        symbol: str,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        vwap_enabled: bool = True,
        enabled: bool = True,
    ) -> str:
        raise NotImplementedError

    def list_watchlist(self, user_ids: list[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def add_signal_rule(self, user_id: str, signal_type: str, option_strategy: str = "buy_call", **fields: Any) -> str:
        raise NotImplementedError

    def list_signal_rules(self, user_ids: list[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_signal_rule(self, rule_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def add_signal(self, signal: Signal) -> bool:
        raise NotImplementedError

    def get_signal(self, signal_id: str) -> Signal | None:
        raise NotImplementedError

    def list_pending_signals(self, user_id: str) -> list[Signal]:
        raise NotImplementedError

    def claim_signal(self, signal_id: str) -> bool:
        raise NotImplementedError

    def release_signal(self, signal_id: str) -> None:
        raise NotImplementedError

    def add_order(self, order: Order) -> None:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Order | None:
        raise NotImplementedError

    def list_orders(self, user_id: str, limit: int = 100) -> list[Order]:
        raise NotImplementedError

    def count_orders_since(self, user_id: str, since_ts: int) -> int:
        raise NotImplementedError

    def list_filled_orders_since(self, user_id: str, since_ts: int) -> list[Order]:
        raise NotImplementedError

    def update_order_status(self, order_id: str, status: str, updated_at: int, filled_price: float | None = None) -> None:
        raise NotImplementedError

    def record_execution(self, order: Order, position: Position) -> None:
        raise NotImplementedError

    def record_modification(self, order: Order, positions: list[Position]) -> None:
        raise NotImplementedError

    def claim_close(self, position_id: str) -> bool:
        raise NotImplementedError

    def release_close(self, position_id: str) -> None:
        raise NotImplementedError

    def record_close(self, order: Order, position: Position) -> None:
        raise NotImplementedError

    def get_position(self, position_id: str) -> Position | None:
        raise NotImplementedError

    def list_open_positions(self, user_id: str | None = None) -> list[Position]:
        raise NotImplementedError

    def list_positions_for_order(self, order_id: str) -> list[Position]:
        raise NotImplementedError

    def update_position_mark(self, position: Position) -> None:
        raise NotImplementedError

    def add_risk_event(self, user_id: str, reason: str, created_at: int | None = None) -> None:
        raise NotImplementedError

    def list_risk_events(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLStore(BaseStore):
    """Shared SQL for both backends. Statements are written with `?` and rewritten per driver."""

    placeholder = "?"
    greatest = "MAX"
    least = "MIN"

    def _connect(self) -> Any:
        raise NotImplementedError

    def _q(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple | list = ()) -> int:
        with self._transaction() as conn:
            return conn.execute(self._q(sql), params).rowcount

    def _fetchone(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(self._q(sql), params).fetchone()
            return dict(row) if row else None

    def _fetchall(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(self._q(sql), params).fetchall()
            return [dict(r) for r in rows]

    @staticmethod
    def _in_clause(values: list[str]) -> str:
        return ", ".join("?" for _ in values)

    def _insert(self, conn: Any, table: str, columns: tuple[str, ...], values: list[Any], ignore_conflict: bool = False) -> int:
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"
        if ignore_conflict:
            sql += " ON CONFLICT DO NOTHING"
        return conn.execute(self._q(sql), values).rowcount

    def save_trading_settings(self, user_id: str, **fields: Any) -> None:
        unknown = set(fields) - set(_SETTINGS_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown trading settings: {', '.join(sorted(unknown))}")
        columns = list(fields)
        values = [fields[c] for c in columns]
        now = int(time.time())
        insert_cols = ["user_id", *columns, "updated_at"]
        updates = ", ".join(f"{c}=excluded.{c}" for c in [*columns, "updated_at"])
        self._execute(
            f"INSERT INTO trading_settings ({', '.join(insert_cols)}) VALUES ({', '.join('?' for _ in insert_cols)}) "
            f"ON CONFLICT (user_id) DO UPDATE SET {updates}",
            [user_id, *values, now],
        )

    def get_trading_settings(self, user_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM trading_settings WHERE user_id=?", (user_id,))

    def list_trading_settings(self, auto_trade_only: bool = True) -> list[dict[str, Any]]:
        if auto_trade_only:
            return self._fetchall("SELECT * FROM trading_settings WHERE auto_trade_enabled=? ORDER BY user_id", (True,))
        return self._fetchall("SELECT * FROM trading_settings ORDER BY user_id")

    def add_watchlist_item(
        self,
        user_id: str,
        symbol: str,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        vwap_enabled: bool = True,
        enabled: bool = True,
    ) -> str:
        item_id = new_id()
        self._execute(
            "INSERT INTO watchlist (id, user_id, symbol, enabled, bb_period, bb_std_dev, vwap_enabled, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (item_id, user_id, symbol, enabled, bb_period, bb_std_dev, vwap_enabled, int(time.time())),
        )
        return item_id

    def list_watchlist(self, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        return self._fetchall(
            f"SELECT * FROM watchlist WHERE enabled=? AND user_id IN ({self._in_clause(user_ids)}) ORDER BY user_id, symbol",
            [True, *user_ids],
        )

    def add_signal_rule(self, user_id: str, signal_type: str, option_strategy: str = "buy_call", **fields: Any) -> str:
        rule_id = new_id()
        allowed = (
            "name",
            "enabled",
            "position_size_percent",
            "max_position_value",
            "trailing_stop_percent",
            "stop_loss_percent",
            "take_profit_percent",
        )
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown signal rule fields: {', '.join(sorted(unknown))}")
        columns = ("id", "user_id", "signal_type", "option_strategy", *fields.keys(), "created_at")
        with self._transaction() as conn:
            self._insert(
                conn,
                "signal_rules",
                columns,
                [rule_id, user_id, signal_type, option_strategy, *fields.values(), int(time.time())],
            )
        return rule_id

    def list_signal_rules(self, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        return self._fetchall(
            f"SELECT * FROM signal_rules WHERE enabled=? AND user_id IN ({self._in_clause(user_ids)}) ORDER BY created_at",
            [True, *user_ids],
        )

    def get_signal_rule(self, rule_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM signal_rules WHERE id=?", (rule_id,))

    def add_signal(self, signal: Signal) -> bool:
        with self._transaction() as conn:
            inserted = self._insert(
                conn,
                "signals",
                _SIGNAL_COLUMNS,
                [getattr(signal, c) for c in _SIGNAL_COLUMNS],
                ignore_conflict=True,
            )
        return inserted > 0

    def get_signal(self, signal_id: str) -> Signal | None:
        row = self._fetchone("SELECT * FROM signals WHERE id=?", (signal_id,))
        return _signal_from_row(row) if row else None

    def list_pending_signals(self, user_id: str) -> list[Signal]:
        rows = self._fetchall(
            "SELECT * FROM signals WHERE user_id=? AND executed=? AND signal_rule_id IS NOT NULL ORDER BY triggered_at, id",
            (user_id, False),
        )
        return [_signal_from_row(r) for r in rows]

    def claim_signal(self, signal_id: str) -> bool:
        return self._execute("UPDATE signals SET executed=? WHERE id=? AND executed=?", (True, signal_id, False)) == 1

    def release_signal(self, signal_id: str) -> None:
        self._execute("UPDATE signals SET executed=? WHERE id=?", (False, signal_id))

    def add_order(self, order: Order) -> None:
        with self._transaction() as conn:
            self._insert(conn, "orders", _ORDER_COLUMNS, [getattr(order, c) for c in _ORDER_COLUMNS])

    def get_order(self, order_id: str) -> Order | None:
        row = self._fetchone("SELECT * FROM orders WHERE id=?", (order_id,))
        return _order_from_row(row) if row else None

    def list_orders(self, user_id: str, limit: int = 100) -> list[Order]:
        rows = self._fetchall(
            "SELECT * FROM orders WHERE user_id=? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [_order_from_row(r) for r in rows]

    def count_orders_since(self, user_id: str, since_ts: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM orders WHERE user_id=? AND created_at >= ?",
            (user_id, since_ts),
        )
        return int(row["n"]) if row else 0

    def list_filled_orders_since(self, user_id: str, since_ts: int) -> list[Order]:
        rows = self._fetchall(
            "SELECT * FROM orders WHERE user_id=? AND status=? AND created_at >= ? ORDER BY created_at",
            (user_id, "filled", since_ts),
        )
        return [_order_from_row(r) for r in rows]

    def update_order_status(self, order_id: str, status: str, updated_at: int, filled_price: float | None = None) -> None:
        if filled_price is None:
            self._execute("UPDATE orders SET status=?, updated_at=? WHERE id=?", (status, updated_at, order_id))
        else:
            self._execute(
                "UPDATE orders SET status=?, filled_price=?, updated_at=? WHERE id=?",
                (status, filled_price, updated_at, order_id),
            )

    def record_execution(self, order: Order, position: Position) -> None:
        with self._transaction() as conn:
            self._insert(conn, "orders", _ORDER_COLUMNS, [getattr(order, c) for c in _ORDER_COLUMNS])
            self._insert(conn, "positions", _POSITION_COLUMNS, [getattr(position, c) for c in _POSITION_COLUMNS])

    def record_modification(self, order: Order, positions: list[Position]) -> None:
        with self._transaction() as conn:
            conn.execute(
                self._q(
                    "UPDATE orders SET limit_price=?, trailing_stop_percent=?, stop_loss_price=?, take_profit_price=?, "
                    "updated_at=? WHERE id=?"
                ),
                (
                    order.limit_price,
                    order.trailing_stop_percent,
                    order.stop_loss_price,
                    order.take_profit_price,
                    order.updated_at,
                    order.id,
                ),
            )
            for position in positions:
                conn.execute(
                    self._q(
                        "UPDATE positions SET trailing_stop_percent=?, trailing_stop_price=?, stop_loss_price=?, "
                        "take_profit_price=? WHERE id=? AND is_open=?"
                    ),
                    (
                        position.trailing_stop_percent,
                        position.trailing_stop_price,
                        position.stop_loss_price,
                        position.take_profit_price,
                        position.id,
                        True,
                    ),
                )

    def claim_close(self, position_id: str) -> bool:
        return self._execute("UPDATE positions SET is_open=? WHERE id=? AND is_open=?", (False, position_id, True)) == 1

    def release_close(self, position_id: str) -> None:
        self._execute("UPDATE positions SET is_open=? WHERE id=? AND closed_at IS NULL", (True, position_id))

    def record_close(self, order: Order, position: Position) -> None:
        # the position must already be claimed with claim_close
        with self._transaction() as conn:
            self._insert(conn, "orders", _ORDER_COLUMNS, [getattr(order, c) for c in _ORDER_COLUMNS])
            updated = conn.execute(
                self._q(
                    "UPDATE positions SET closed_at=?, close_reason=?, current_price=?, unrealized_pnl=? "
                    "WHERE id=? AND is_open=? AND closed_at IS NULL"
                ),
                (position.closed_at, position.close_reason, position.current_price, position.unrealized_pnl, position.id, False),
            ).rowcount
            if updated != 1:
                raise PositionClosed(position.id)

    def get_position(self, position_id: str) -> Position | None:
        row = self._fetchone("SELECT * FROM positions WHERE id=?", (position_id,))
        return _position_from_row(row) if row else None

    def list_open_positions(self, user_id: str | None = None) -> list[Position]:
        if user_id is None:
            rows = self._fetchall("SELECT * FROM positions WHERE is_open=? ORDER BY opened_at, id", (True,))
        else:
            rows = self._fetchall(
                "SELECT * FROM positions WHERE is_open=? AND user_id=? ORDER BY opened_at, id",
                (True, user_id),
            )
        return [_position_from_row(r) for r in rows]

    def list_positions_for_order(self, order_id: str) -> list[Position]:
        rows = self._fetchall("SELECT * FROM positions WHERE order_id=?", (order_id,))
        return [_position_from_row(r) for r in rows]

    def update_position_mark(self, position: Position) -> None:
        if position.trailing_stop_price is None:
            self._execute(
                "UPDATE positions SET current_price=?, unrealized_pnl=? WHERE id=? AND is_open=?",
                (position.current_price, position.unrealized_pnl, position.id, True),
            )
            return
        # ratchet in SQL so an older snapshot cannot loosen a stop written by another pass
        stop = position.trailing_stop_price
        self._execute(
            "UPDATE positions SET current_price=?, unrealized_pnl=?, trailing_stop_price=CASE "
            "WHEN trailing_stop_price IS NULL THEN ? "
            f"WHEN quantity < 0 THEN {self.least}(trailing_stop_price, ?) "
            f"ELSE {self.greatest}(trailing_stop_price, ?) END "
            "WHERE id=? AND is_open=?",
            (position.current_price, position.unrealized_pnl, stop, stop, stop, position.id, True),
        )

    def add_risk_event(self, user_id: str, reason: str, created_at: int | None = None) -> None:
        self._execute(
            "INSERT INTO risk_events (user_id, reason, created_at) VALUES (?, ?, ?)",
            (user_id, reason, created_at if created_at is not None else int(time.time())),
        )

    def list_risk_events(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM risk_events WHERE user_id=? ORDER BY created_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        )


class SQLiteStore(SQLStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        conn = self._connect()
        try:
            conn.executescript(schema_path.read_text())
        finally:
            conn.close()


class PostgresStore(SQLStore):
    placeholder = "%s"
    greatest = "GREATEST"
    least = "LEAST"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self._ensure_schema()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.dsn, row_factory=dict_row)

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema_pg.sql")
        with self._transaction() as conn:
            statements = [s.strip() for s in schema_path.read_text().split(";") if s.strip()]
            for stmt in statements:
                conn.execute(stmt)


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _signal_from_row(row: dict[str, Any]) -> Signal:
    return Signal(
        id=row["id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        signal_type=row["signal_type"],
        price_at_signal=float(row["price_at_signal"]),
        bb_upper=_opt_float(row["bb_upper"]),
        bb_lower=_opt_float(row["bb_lower"]),
        bb_middle=_opt_float(row["bb_middle"]),
        vwap=_opt_float(row["vwap"]),
        volume=float(row["volume"] or 0.0),
        triggered_at=int(row["triggered_at"]),
        executed=bool(row["executed"]),
        watchlist_id=row["watchlist_id"],
        signal_rule_id=row["signal_rule_id"],
        bar_ts=row["bar_ts"],
    )


def _order_from_row(row: dict[str, Any]) -> Order:
    return Order(
        id=row["id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        side=row["side"],
        quantity=int(row["quantity"]),
        limit_price=float(row["limit_price"]),
        status=row["status"],
        created_at=int(row["created_at"]),
        signal_id=row["signal_id"],
        broker_order_id=row["broker_order_id"],
        filled_price=_opt_float(row["filled_price"]),
        strategy=row["strategy"],
        trailing_stop_percent=_opt_float(row["trailing_stop_percent"]),
        stop_loss_price=_opt_float(row["stop_loss_price"]),
        take_profit_price=_opt_float(row["take_profit_price"]),
        updated_at=row["updated_at"],
    )


def _position_from_row(row: dict[str, Any]) -> Position:
    return Position(
        id=row["id"],
        user_id=row["user_id"],
        order_id=row["order_id"],
        symbol=row["symbol"],
        quantity=int(row["quantity"]),
        avg_cost=float(row["avg_cost"]),
        opened_at=int(row["opened_at"]),
        is_open=bool(row["is_open"]),
        current_price=_opt_float(row["current_price"]),
        unrealized_pnl=_opt_float(row["unrealized_pnl"]),
        trailing_stop_percent=_opt_float(row["trailing_stop_percent"]),
        trailing_stop_price=_opt_float(row["trailing_stop_price"]),
        stop_loss_price=_opt_float(row["stop_loss_price"]),
        take_profit_price=_opt_float(row["take_profit_price"]),
        closed_at=row["closed_at"],
        close_reason=row["close_reason"],
    )


def create_store(database_url: str | None, sqlite_path: str) -> BaseStore:
    if database_url:
        return PostgresStore(database_url)
    return SQLiteStore(sqlite_path)
