"""SQL statements issued by the backup and restore engines."""

SYSTEM_DATABASES = frozenset({'system', 'information_schema', 'INFORMATION_SCHEMA'})

DATA_FORMAT = 'Native'


def quote_identifier(name: str) -> str:
    """Backtick-quote a ClickHouse identifier."""
    return '`' + name.replace('\\', '\\\\').replace('`', '\\`') + '`'


def qualified(database: str, table: str) -> str:
    return f"{quote_identifier(database)}.{quote_identifier(table)}"


def quote_string(value: str) -> str:
    return "'" + value.replace('\\', '\\\\').replace("'", "\\'") + "'"


def show_databases() -> str:
    return 'SHOW DATABASES'


def show_tables(database: str) -> str:
    return f"SHOW TABLES FROM {quote_identifier(database)}"


def show_create_table(database: str, table: str) -> str:
    # TabSeparatedRaw keeps newlines in the statement unescaped so the
    # file can be replayed as-is.
    return f"SHOW CREATE TABLE {qualified(database, table)} FORMAT TabSeparatedRaw"


def select_all(database: str, table: str) -> str:
    return f"SELECT * FROM {qualified(database, table)} FORMAT {DATA_FORMAT}"


def insert_all(database: str, table: str) -> str:
    return f"INSERT INTO {qualified(database, table)} FORMAT {DATA_FORMAT}"


def backup_database(database: str, disk: str, filename: str) -> str:
    return (
        f"BACKUP DATABASE {quote_identifier(database)} "
        f"TO Disk({quote_string(disk)}, {quote_string(filename)})"
    )


def restore_database(database: str, disk: str, filename: str) -> str:
    return (
        f"RESTORE DATABASE {quote_identifier(database)} "
        f"FROM Disk({quote_string(disk)}, {quote_string(filename)})"
    )


def create_database(database: str) -> str:
    return f"CREATE DATABASE IF NOT EXISTS {quote_identifier(database)}"


def drop_table(database: str, table: str) -> str:
    return f"DROP TABLE IF EXISTS {qualified(database, table)}"


def ping() -> str:
    return 'SELECT 1'
