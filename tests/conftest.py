"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def odbc_test_credentials():
    """
    Credentials of the ODBC test database, from the environment:

        SITESNAP_TEST_ODBC_DRIVER    e.g. "ODBC Driver 18 for SQL Server"
        SITESNAP_TEST_ODBC_HOST
        SITESNAP_TEST_ODBC_NAME
        SITESNAP_TEST_ODBC_USER
        SITESNAP_TEST_ODBC_PASSWORD
    """
    from sitesnap.snapshot.models import DbCredentials

    driver = os.environ.get("SITESNAP_TEST_ODBC_DRIVER")
    name = os.environ.get("SITESNAP_TEST_ODBC_NAME")
    if not driver or not name:
        return None
    return DbCredentials(
        name=name,
        host=os.environ.get("SITESNAP_TEST_ODBC_HOST"),
        user=os.environ.get("SITESNAP_TEST_ODBC_USER"),
        password=os.environ.get("SITESNAP_TEST_ODBC_PASSWORD"),
        driver=driver,
    )


def is_odbc_database_available() -> bool:
    """Check if an ODBC database is configured for integration testing."""
    credentials = odbc_test_credentials()
    if credentials is None:
        return False

    try:
        import pyodbc
        from sitesnap.snapshot.db_export import OdbcSource

        conn = pyodbc.connect(OdbcSource.build_connection_string(credentials), timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"ODBC database not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if no ODBC database is available."""
    if is_odbc_database_available():
        return

    skip_odbc = pytest.mark.skip(reason="ODBC database not available (set SITESNAP_TEST_ODBC_*)")

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_odbc)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from the user's real sitesnap config and cache."""
    for name in ("SITESNAP_CONFIG", "SITESNAP_CACHE_DIR", "SITESNAP_REPOSITORY_PATH", "SITESNAP_ENCRYPTION_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SITESNAP_HOME", str(tmp_path / "home"))
    yield
    # configure_logging() binds a handler to the captured stderr of this test
    package_logger = logging.getLogger("sitesnap")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)


@pytest.fixture
def site_tree(tmp_path) -> Path:
    """
    A small site file tree:

        index.php
        wp-config.php
        cache/x.tmp
        uploads/2024/photo.jpg
        themes/default/style.css
        themes/default/copy.css      (same content as style.css)
    """
    root = tmp_path / "site"
    files = {
        "index.php": b"<?php echo 'hello';\n",
        "wp-config.php": b"<?php define('DB_NAME', 'site');\n",
        "cache/x.tmp": b"temporary",
        "uploads/2024/photo.jpg": b"\xff\xd8\xff\xe0JPEGDATA",
        "themes/default/style.css": b"body { color: black; }\n",
        "themes/default/copy.css": b"body { color: black; }\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def create_site_database(path: Path, user_count: int = 3, post_count: int = 5) -> Path:
    """Create a SQLite database shaped like a WordPress site."""
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE wp_users (
            ID INTEGER PRIMARY KEY,
            user_login TEXT,
            user_nicename TEXT,
            user_email TEXT,
            user_url TEXT,
            display_name TEXT,
            user_pass TEXT,
            user_activation_key TEXT
        );
        CREATE TABLE wp_usermeta (
            umeta_id INTEGER PRIMARY KEY,
            user_id INTEGER,
            meta_key TEXT,
            meta_value TEXT
        );
        CREATE TABLE wp_comments (
            comment_ID INTEGER PRIMARY KEY,
            user_id INTEGER,
            comment_author TEXT,
            comment_author_email TEXT,
            comment_author_url TEXT,
            comment_author_IP TEXT,
            comment_content TEXT
        );
        CREATE TABLE wp_posts (
            ID INTEGER PRIMARY KEY,
            post_title TEXT,
            post_content TEXT
        );
        CREATE TABLE wp_options (
            option_name TEXT,
            option_value TEXT
        );
        """
    )
    for i in range(1, user_count + 1):
        conn.execute(
            "INSERT INTO wp_users VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (i, f"alice{i}", f"alice{i}", f"alice{i}@real-mail.org", f"https://alice{i}.blog",
             f"Alice Real {i}", f"$P$realhash{i}", f"key{i}"),
        )
        conn.execute(
            "INSERT INTO wp_usermeta (user_id, meta_key, meta_value) VALUES (?, 'first_name', ?)",
            (i, f"Alice{i}"),
        )
        conn.execute(
            "INSERT INTO wp_usermeta (user_id, meta_key, meta_value) VALUES (?, 'show_admin_bar_front', 'true')",
            (i,),
        )
        conn.execute(
            "INSERT INTO wp_comments VALUES (?, ?, ?, ?, ?, ?, ?)",
            (i, i, f"Alice Real {i}", f"alice{i}@real-mail.org", "", f"10.0.0.{i}", "Nice post"),
        )
    for i in range(1, post_count + 1):
        conn.execute("INSERT INTO wp_posts VALUES (?, ?, ?)", (i, f"Post {i}", "x" * 50))
    conn.execute("INSERT INTO wp_options VALUES ('siteurl', 'https://example.org')")
    conn.execute("INSERT INTO wp_options VALUES ('blogname', 'My Blog')")
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def site_db(tmp_path) -> Path:
    """Path to a WordPress-shaped SQLite database."""
    return create_site_database(tmp_path / "site.db")


@pytest.fixture
def cache(tmp_path):
    """Fixture providing an empty LocalCache."""
    from sitesnap.snapshot.cache import LocalCache

    return LocalCache(tmp_path / "cache", lock_timeout=2.0)


@pytest.fixture
def directory_repository(tmp_path):
    """Fixture providing an empty DirectoryRepository."""
    from sitesnap.snapshot.repository import DirectoryRepository

    return DirectoryRepository("team", tmp_path / "repository")


@pytest.fixture
def fast_retry():
    """Retry config with no jitter and tiny delays."""
    from sitesnap.core.retry import RetryConfig

    return RetryConfig(max_attempts=3, initial_delay_ms=1, max_delay_ms=2, jitter=False)


@pytest.fixture
def orchestrator(cache, directory_repository, fast_retry):
    """Fixture providing an orchestrator wired to a temp cache and repository."""
    from sitesnap.snapshot.orchestrator import SnapshotOrchestrator
    from sitesnap.snapshot.packager import Packager

    return SnapshotOrchestrator(
        cache=cache,
        packager=Packager(max_workers=2),
        repository=directory_repository,
        retry_config=fast_retry,
        max_workers=2,
        sleep=lambda _: None,
    )


@pytest.fixture
def odbc_source():
    """
    OdbcSource on the integration database, with a scratch table
    sitesnap_it_posts(ID, post_title) holding 5 rows.
    """
    from sitesnap.snapshot.db_export import OdbcSource

    source = OdbcSource(odbc_test_credentials())
    table = source.quote("sitesnap_it_posts")
    cursor = source.conn.cursor()
    cursor.execute(f"CREATE TABLE {table} (ID INTEGER NOT NULL PRIMARY KEY, post_title VARCHAR(100))")
    for i in range(1, 6):
        cursor.execute(f"INSERT INTO {table} (ID, post_title) VALUES (?, ?)", (i, f"Post {i}"))
    source.conn.commit()
    cursor.close()

    yield source

    if source.conn is None:
        source = OdbcSource(odbc_test_credentials())
    cursor = source.conn.cursor()
    cursor.execute(f"DROP TABLE {table}")
    source.conn.commit()
    cursor.close()
    source.close()
