"""Tests for migrations/env_helpers.py DSN-to-URL conversion."""

from __future__ import annotations

import os
import sys
from unittest.mock import patch

import pytest

# Make migrations importable without alembic context
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from migrations.env_helpers import database_url, libpq_dsn_to_url  # noqa: E402


class TestLibpqDsnToUrl:
    def test_cloudsql_socket(self):
        dsn = "dbname=marketpay user=marketpay-sa password=s3cret host=/cloudsql/proj:europe-west1:inst"
        result = libpq_dsn_to_url(dsn)
        assert result == (
            "postgresql+psycopg2://marketpay-sa:s3cret@/marketpay"
            "?host=%2Fcloudsql%2Fproj%3Aeurope-west1%3Ainst"
        )

    def test_tcp_host(self):
        dsn = "dbname=marketpay user=admin password=pw host=localhost port=5432"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://admin:pw@localhost:5432/marketpay"

    def test_default_port(self):
        dsn = "dbname=db user=u password=p host=myhost"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://u:p@myhost:5432/db"

    def test_special_chars_encoded(self):
        dsn = "dbname=db user=u@domain password=p@ss=word host=h port=5432"
        result = libpq_dsn_to_url(dsn)
        assert "u%40domain" in result
        assert "p%40ss%3Dword" in result

    def test_quoted_password_with_spaces(self):
        dsn = "dbname=db user=u password='p@ss w0rd' host=h port=5432"
        assert "p%40ss+w0rd" in libpq_dsn_to_url(dsn)

    def test_db_password_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "from-env" in libpq_dsn_to_url("dbname=db user=u host=h port=5432")

    def test_db_password_env_not_used_when_dsn_has_password(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = libpq_dsn_to_url("dbname=db user=u password=from-dsn host=h port=5432")
        assert "from-dsn" in result
        assert "from-env" not in result


class TestDatabaseUrl:
    def test_url_passthrough(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+psycopg2://u:p@h/db"}):
            os.environ.pop("DB_PASSWORD", None)
            assert database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_dsn_converted(self):
        dsn = "dbname=marketpay user=sa password=pw host=/cloudsql/p:r:i"
        with patch.dict(os.environ, {"DATABASE_URL": dsn}):
            assert database_url().startswith("postgresql+psycopg2://sa:pw@/marketpay")

    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                database_url()

    @pytest.mark.parametrize("scheme", ["postgres://", "postgresql://"])
    def test_scheme_gets_driver(self, scheme):
        with patch.dict(os.environ, {"DATABASE_URL": f"{scheme}u:p@h/db"}):
            assert database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_url_db_password_fallback(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://u@h:5433/db", "DB_PASSWORD": "secret"}):
            assert database_url() == "postgresql+psycopg2://u:secret@h:5433/db"

    def test_url_password_wins_over_env(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://u:p@h/db", "DB_PASSWORD": "secret"}):
            assert "secret" not in database_url()

    def test_already_has_driver_not_doubled(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+psycopg2://u:p@h/db"}):
            assert database_url().count("+psycopg2") == 1
