"""Journal Database Schema."""

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        start_time TEXT NOT NULL,
        end_time TEXT,
        config_json TEXT,
        initial_capital TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        trade_id TEXT UNIQUE NOT NULL,
        run_id INTEGER,
        strategy_id TEXT,
        strategy_type TEXT NOT NULL,
        underlying TEXT NOT NULL,
        symbol TEXT NOT NULL,
        instrument_type TEXT NOT NULL,
        strike TEXT,
        expiry TEXT,
        side TEXT NOT NULL,
        quantity INTEGER NOT NULL,

        entry_time TEXT NOT NULL,
        entry_price TEXT NOT NULL,
        entry_spot TEXT,

        exit_time TEXT,
        exit_price TEXT,
        exit_spot TEXT,
        exit_reason TEXT,
        realized_pnl TEXT,
        days_held INTEGER,

        notes TEXT,
        lessons TEXT,
        rating INTEGER,

        status TEXT NOT NULL DEFAULT 'OPEN',
        FOREIGN KEY(run_id) REFERENCES runs(id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_underlying ON trades(underlying);",
    "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);",
    "CREATE INDEX IF NOT EXISTS idx_trades_entry_time ON trades(entry_time);",
]
