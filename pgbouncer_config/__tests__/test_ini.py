import textwrap
from io import BytesIO
from pathlib import Path
from typing import Any, Callable

import pytest

from pgbouncer_config.config import Database, PgBouncerConfig, PgBouncerSetting, PoolMode
from pgbouncer_config.errors import ParseError, ValidationError
from pgbouncer_config.ini import (
    format_ini_value,
    load_ini,
    parse_connection_params,
    parse_ini,
    quote_connection_value,
    read_ini,
    render_ini,
    render_sections,
    save_ini,
    write_ini,
)

EXAMPLE_INI = (
    "[pgbouncer]\n"
    "listen_addr = 127.0.0.1\n"
    "listen_port = 6432\n"
    "pool_mode = session\n"
    "[databases]\n"
    "db1 = host=localhost port=5432 dbname=db1 user=postgres\n"
)


@pytest.mark.parametrize(
    "value,expected",
    [
        (123, "123"),
        ("hello", "hello"),
        (PoolMode.TRANSACTION, "transaction"),
        (["a", "b", "c"], "a, b, c"),
    ],
)
def test_format_ini_value(value: Any, expected: str) -> None:
    assert format_ini_value(value) == expected


def test_render_sections() -> None:
    sections = {
        "section1": {"key1": "value1", "empty": ""},
        "section2": {"list_key": "a, b"},
    }

    text = render_sections(sections, {"section1": "This is section 1"})

    assert text == textwrap.dedent(
        """\
        # This is section 1
        [section1]
        key1 = value1
        empty =

        [section2]
        list_key = a, b

        """
    )


def test_parse_example() -> None:
    config = parse_ini(EXAMPLE_INI)

    assert config.pgbouncer.listen_addr == "127.0.0.1"
    assert config.pgbouncer.listen_port == 6432
    assert config.pgbouncer.pool_mode == PoolMode.SESSION
    assert config.databases.aliases() == ["db1"]

    database = config.databases["db1"]
    assert database.host == "localhost"
    assert database.port == 5432
    assert database.dbname == "db1"
    assert database.user == "postgres"
    assert database.password is None


def test_parse_fills_defaults() -> None:
    config = parse_ini("[pgbouncer]\n")

    assert config.pgbouncer == PgBouncerSetting()
    assert len(config.databases) == 0


def test_parse_comments_and_blank_lines() -> None:
    config = parse_ini(
        textwrap.dedent(
            """\
            # managed by hand
            [pgbouncer]
            ; the listener
            listen_port = 6500

            [databases]
              # indented comment
            app = host=db1 port=5432 dbname=app
            """
        )
    )

    assert config.pgbouncer.listen_port == 6500
    assert config.databases.aliases() == ["app"]


def test_parse_coerces_typed_values() -> None:
    config = parse_ini(
        textwrap.dedent(
            """\
            [pgbouncer]
            auth_type = SCRAM-SHA-256
            pool_mode = Transaction
            admin_users = admin, ops
            server_idle_timeout = 600
            logfile =
            """
        )
    )

    assert config.pgbouncer.auth_type == "scram-sha-256"
    assert config.pgbouncer.pool_mode == PoolMode.TRANSACTION
    assert config.pgbouncer.admin_users == ["admin", "ops"]
    assert config.pgbouncer.server_idle_timeout == 600
    assert config.pgbouncer.logfile is None


def test_parse_unknown_keys_become_passthrough() -> None:
    config = parse_ini("[pgbouncer]\napplication_name_add_host = 1\ntcp_keepalive = 1\n")

    assert config.pgbouncer.passthrough == {
        "application_name_add_host": "1",
        "tcp_keepalive": "1",
    }


def test_parse_skips_unsupported_sections() -> None:
    config = parse_ini(
        textwrap.dedent(
            """\
            [pgbouncer]
            listen_port = 6432
            [users]
            app_user = pool_mode=session
            [databases]
            app = host=db1 port=5432 dbname=app
            """
        )
    )

    assert config.databases.aliases() == ["app"]
    assert config.pgbouncer.passthrough == {}


def test_parse_database_extra_params() -> None:
    config = parse_ini(
        "[pgbouncer]\n[databases]\n"
        "app = host=db1 port=5432 dbname=app pool_size=10;pool_mode=transaction "
        "connect_query='SELECT 1'\n"
    )

    assert config.databases["app"].extra == {
        "pool_size": "10",
        "pool_mode": "transaction",
        "connect_query": "SELECT 1",
    }


def test_parse_quoted_values() -> None:
    params = parse_connection_params("app", r"dbname='my db' password='it\'s' host=db1", 1)

    assert params == {"dbname": "my db", "password": "it's", "host": "db1"}


@pytest.mark.parametrize("value", ["plain", "my db", "it's", "semi;colon", "back\\slash", ""])
def test_quote_connection_value_round_trip(value: str) -> None:
    params = parse_connection_params("app", f"password={quote_connection_value(value)}", 1)
    assert params == {"password": value}


def test_parse_duplicate_alias() -> None:
    text = textwrap.dedent(
        """\
        [pgbouncer]
        [databases]
        app = host=db1 port=5432 dbname=app
        app = host=db2 port=5432 dbname=app
        """
    )

    with pytest.raises(ParseError) as exc_info:
        parse_ini(text)

    assert exc_info.value.line == 4
    assert exc_info.value.alias == "app"
    assert "line 4" in str(exc_info.value)


def test_parse_duplicate_setting() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini("[pgbouncer]\nlisten_port = 6432\nlisten_port = 6433\n")

    assert exc_info.value.line == 3
    assert exc_info.value.section == "pgbouncer"


def test_parse_missing_host() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini("[pgbouncer]\n[databases]\napp = port=5432 dbname=app\n")

    assert exc_info.value.line == 3
    assert exc_info.value.section == "databases"
    assert "host" in str(exc_info.value)


def test_parse_non_numeric_port() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini("[pgbouncer]\n[databases]\napp = host=db1 port=abc dbname=app\n")

    assert exc_info.value.token == "port=abc"
    assert "near 'port=abc'" in str(exc_info.value)


def test_parse_duplicate_database_attribute() -> None:
    with pytest.raises(ParseError):
        parse_ini("[pgbouncer]\n[databases]\napp = host=db1 host=db2 port=5432 dbname=app\n")


def test_parse_malformed_database_entry() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini("[pgbouncer]\n[databases]\napp = host=db1 port=5432 dbname=app garbage\n")

    assert exc_info.value.token == "garbage"


@pytest.mark.parametrize(
    "text,line",
    [
        ("[pgbouncer]\nlisten_port = 70000\n", 2),
        ("[pgbouncer]\nlisten_port = abc\n", 2),
        ("[pgbouncer]\nlisten_port = +6432\n", 2),
        ("[pgbouncer]\nlisten_port = 6_432\n", 2),
        ("[pgbouncer]\nserver_idle_timeout = -1\n", 2),
        ("[pgbouncer]\nmax_client_conn =\n", 2),
        ("[pgbouncer]\npool_mode = sometimes\n", 2),
        ("[pgbouncer]\nnot a setting\n", 2),
        ("listen_port = 6432\n[pgbouncer]\n", 1),
    ],
)
def test_parse_invalid_setting(text: str, line: int) -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini(text)
    assert exc_info.value.line == line


@pytest.mark.parametrize("port", ["+5432", "5_432", "-5432"])
def test_parse_signed_or_separated_port(port: str) -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini(f"[pgbouncer]\n[databases]\napp = host=db1 port={port} dbname=app\n")

    assert exc_info.value.token == f"port={port}"


def test_parse_pool_size_above_max_client_conn() -> None:
    config = parse_ini(
        "[pgbouncer]\nmax_client_conn = 50\n"
        "[databases]\napp = host=db port=5432 dbname=app pool_size=80\n"
    )

    assert config.pgbouncer.max_client_conn == 50
    assert config.databases["app"].extra == {"pool_size": "80"}


def test_parse_missing_pgbouncer_section() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse_ini("[databases]\napp = host=db1 port=5432 dbname=app\n")

    assert "pgbouncer" in str(exc_info.value)


def test_parse_database_pointing_at_listener() -> None:
    text = textwrap.dedent(
        """\
        [pgbouncer]
        listen_addr = 127.0.0.1
        listen_port = 6432
        [databases]
        app = host=db1 port=5432 dbname=app
        loop = host=localhost port=6432 dbname=app
        """
    )

    with pytest.raises(ParseError) as exc_info:
        parse_ini(text)

    assert exc_info.value.alias == "loop"
    assert exc_info.value.line == 6


def test_read_ini_handles_byte_order_mark() -> None:
    config = read_ini(BytesIO(b"\xef\xbb\xbf" + EXAMPLE_INI.encode("utf-8")))
    assert config.pgbouncer.listen_port == 6432


def test_read_ini_rejects_invalid_utf8() -> None:
    with pytest.raises(ParseError):
        read_ini(BytesIO(b"[pgbouncer]\nlogfile = \xff\n"))


def test_render_ini(sample_config: PgBouncerConfig) -> None:
    text = render_ini(sample_config)

    assert text == textwrap.dedent(
        """\
        [pgbouncer]
        listen_addr = 0.0.0.0
        listen_port = 6432
        auth_type = md5
        max_client_conn = 100
        default_pool_size = 20
        pool_mode = transaction
        admin_users = admin
        auth_file = /etc/pgbouncer/userlist.txt
        server_idle_timeout = 600

        [databases]
        app = host=db1.internal port=5432 dbname=app user=app_user password=secret
        reporting = host=db2.internal port=5433 dbname=reports pool_size=5 pool_mode=session

        """
    )


def test_render_ini_without_credentials(sample_config: PgBouncerConfig) -> None:
    text = render_ini(sample_config, output_credentials=False)

    assert "app = host=db1.internal port=5432 dbname=app\n" in text
    assert "user=" not in text
    assert "password=" not in text


def test_render_ini_passthrough_after_recognized_keys(
    make_config: Callable[..., PgBouncerConfig],
) -> None:
    config = make_config(
        PgBouncerSetting(passthrough={"application_name_add_host": "1"}, suspend_timeout=10)
    )

    lines = render_ini(config).splitlines()

    assert lines.index("application_name_add_host = 1") > lines.index("suspend_timeout = 10")


def test_render_ini_section_comments(sample_config: PgBouncerConfig) -> None:
    text = render_ini(sample_config, section_comments={"pgbouncer": "Generated file"})
    assert text.startswith("# Generated file\n[pgbouncer]\n")


def test_round_trip(sample_config: PgBouncerConfig) -> None:
    assert parse_ini(render_ini(sample_config)) == sample_config


def test_round_trip_with_quoting_and_passthrough(
    make_config: Callable[..., PgBouncerConfig],
) -> None:
    config = make_config(
        PgBouncerSetting(
            stats_users=["stats", "monitor"],
            ignore_startup_parameters=["extra_float_digits"],
            passthrough={"application_name_add_host": "1"},
        ),
        [
            Database(
                alias="odd",
                host="db1",
                port=5432,
                dbname="my db",
                password="it's; complicated",
                extra={"connect_query": "SET search_path = app"},
            )
        ],
    )

    assert parse_ini(render_ini(config)) == config


def test_round_trip_with_ini_syntax_in_values(
    make_config: Callable[..., PgBouncerConfig],
) -> None:
    config = make_config(
        PgBouncerSetting(
            logfile="/var/log/[pgbouncer]#1.log",
            passthrough={"application_name_add_host": "a = b [databases] ; #c"},
        ),
        [
            Database(
                alias="app",
                host="db#1",
                port=5432,
                dbname="app",
                extra={"connect_query": "[x] = y; # z"},
            )
        ],
    )

    assert parse_ini(render_ini(config)) == config


def test_round_trip_with_padded_password(make_config: Callable[..., PgBouncerConfig]) -> None:
    config = make_config(
        PgBouncerSetting(),
        [Database(alias="app", host="db1", port=5432, dbname="app", password="  spaced out ")],
    )

    text = render_ini(config)

    assert "password='  spaced out '" in text
    assert parse_ini(text) == config


@pytest.mark.parametrize(
    "key,value",
    [
        ("application_name_add_host", "1\n[databases]\nevil = host=x port=1 dbname=y"),
        ("tcp_keepalive", "1\r"),
        ("tcp_keepalive", "1\x00"),
        ("tcp_keepalive", "1 "),
        ("tcp_keepalive", " 1"),
        ("tcp_keepalive", "1\u2028"),
    ],
)
def test_passthrough_value_must_fit_on_one_line(key: str, value: str) -> None:
    setting = PgBouncerSetting()

    with pytest.raises(ValidationError) as exc_info:
        setting.set_passthrough(key, value)
    assert exc_info.value.field == f"passthrough.{key}"
    assert setting.passthrough == {}

    with pytest.raises(ValidationError):
        PgBouncerSetting(passthrough={key: value})


@pytest.mark.parametrize(
    "field,value",
    [
        ("listen_addr", " 10.0.0.1 "),
        ("listen_addr", "10.0.0.1\n[databases]"),
        ("logfile", "/var/log/pgbouncer.log\n"),
        ("auth_file", "/etc/pgbouncer/\x00userlist.txt"),
        ("unix_socket_dir", "/tmp "),
    ],
)
def test_setting_text_must_fit_on_one_line(field: str, value: str) -> None:
    setting = PgBouncerSetting()
    previous = getattr(setting, field)

    with pytest.raises(ValidationError) as exc_info:
        setattr(setting, field, value)

    assert exc_info.value.field == field
    assert getattr(setting, field) == previous


@pytest.mark.parametrize(
    "field,value",
    [
        ("host", "db1\nevil = host=x"),
        ("host", " db1"),
        ("dbname", "app\r"),
        ("user", "app_user\x00"),
        ("password", "x\ny"),
        ("alias", "a\x00b"),
    ],
)
def test_database_text_must_fit_on_one_line(field: str, value: str) -> None:
    values = {"alias": "a", "host": "h", "port": 5432, "dbname": "d", field: value}

    with pytest.raises(ValidationError):
        Database(**values)


@pytest.mark.parametrize("value", ["10\nevil = host=x port=1 dbname=y", " 10", "10\x85"])
def test_database_extra_value_must_fit_on_one_line(value: str) -> None:
    database = Database(alias="a", host="h", port=5432, dbname="d")

    with pytest.raises(ValidationError) as exc_info:
        database.set_extra("pool_size", value)

    assert exc_info.value.field == "extra.pool_size"
    assert database.extra == {}


def test_render_is_idempotent() -> None:
    text = render_ini(parse_ini(EXAMPLE_INI))
    assert render_ini(parse_ini(text)) == text


def test_write_ini() -> None:
    stream = BytesIO()
    write_ini(parse_ini(EXAMPLE_INI), stream, output_credentials=False)

    assert b"db1 = host=localhost port=5432 dbname=db1\n" in stream.getvalue()


def test_save_and_load_ini(temp_dir: Path, sample_config: PgBouncerConfig) -> None:
    path = temp_dir / "nested" / "pgbouncer.ini"

    save_ini(sample_config, path)

    assert path.exists()
    assert load_ini(path) == sample_config


def test_load_ini_missing_file(temp_dir: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_ini(temp_dir / "missing.ini")
