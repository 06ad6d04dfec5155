"""Daily close price providers and the fallback resolver."""
