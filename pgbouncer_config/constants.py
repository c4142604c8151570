# port bounds
MIN_PORT = 1
MAX_PORT = 65535

# connection count bounds for max_client_conn, default_pool_size
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 65535

# timeouts are whole seconds stored by pgbouncer as 32 bit ints
MAX_TIMEOUT_SECONDS = 2147483647

# section names
SECTION_PGBOUNCER = "pgbouncer"
SECTION_DATABASES = "databases"

# database entry attributes with a dedicated field
DATABASE_REQUIRED_ATTRS = ["host", "port", "dbname"]
DATABASE_CREDENTIAL_ATTRS = ["user", "password"]
DATABASE_RESERVED_ATTRS = DATABASE_REQUIRED_ATTRS + DATABASE_CREDENTIAL_ATTRS

# per-database overrides that pgbouncer reads as integers
DATABASE_INTEGER_OVERRIDES = ["pool_size", "min_pool_size", "reserve_pool", "max_db_connections"]

# addresses that mean "every interface" in listen_addr
WILDCARD_LISTEN_ADDRS = {"*", "0.0.0.0", "::"}
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

# [pgbouncer] keys that are always written, in order
PGBOUNCER_CORE_KEYS = [
    "listen_addr",
    "listen_port",
    "auth_type",
    "max_client_conn",
    "default_pool_size",
    "pool_mode",
]

# [pgbouncer] keys that are written only when set, in order
PGBOUNCER_OPTIONAL_KEYS = [
    "admin_users",
    "stats_users",
    "ignore_startup_parameters",
    "logfile",
    "pidfile",
    "auth_file",
    "unix_socket_dir",
    "auth_hba_file",
    "auth_ident_file",
    "resolve_conf",
    "server_check_delay",
    "server_idle_timeout",
    "server_lifetime",
    "server_connect_timeout",
    "server_login_retry",
    "client_login_timeout",
    "autodb_idle_timeout",
    "dns_max_ttl",
    "dns_nxdomain_ttl",
    "query_timeout",
    "query_wait_timeout",
    "cancel_wait_timeout",
    "client_idle_timeout",
    "idle_transaction_timeout",
    "suspend_timeout",
]

PGBOUNCER_KEY_ORDER = PGBOUNCER_CORE_KEYS + PGBOUNCER_OPTIONAL_KEYS

# default file locations used by the command line
DEFAULT_DEFINITION_PATH = "./generated/pgbouncer_definition.toml"
DEFAULT_INI_PATH = "./generated/pgbouncer.ini"

# query used to list importable databases on a live server
LIST_DATABASES_SQL = """
SELECT datname
FROM pg_database
WHERE datallowconn AND NOT datistemplate
ORDER BY datname
"""
