from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
import pymysql
from botocore.exceptions import ClientError
from pymysql.constants import CLIENT

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306
DEFAULT_SCRIPT = Path(__file__).resolve().with_name("script.sql")


class InitializerError(RuntimeError):
    pass


@dataclass(frozen=True)
class HandlerSettings:
    script_path: Path
    connect_timeout: int
    verbose: int

    @classmethod
    def from_env(cls) -> "HandlerSettings":
        return cls(
            script_path=Path(os.getenv("SCRIPT_PATH") or DEFAULT_SCRIPT),
            connect_timeout=int(os.getenv("DB_CONNECT_TIMEOUT", "10") or "10"),
            verbose=int(os.getenv("VERBOSE", "0") or "0"),
        )


def configure_logging(verbose_int: int = 0) -> None:
    """Configure root logging. Idempotent-ish for Lambda."""
    level = logging.DEBUG if (verbose_int or 0) >= 1 else logging.INFO

    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        level = getattr(logging, env_level.upper(), level)

    root = logging.getLogger()
    if root.handlers:
        # Lambda already configured; just adjust level.
        root.setLevel(level)
        for h in root.handlers:
            h.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def get_secret_json(secret_id: str) -> dict[str, Any]:
    # Fetched on every invocation so rotated credentials are picked up.
    client = boto3.client("secretsmanager")
    resp = client.get_secret_value(SecretId=secret_id)
    obj = json.loads(resp.get("SecretString") or "")
    if not isinstance(obj, dict):
        raise InitializerError(f"Secret {secret_id} is not a JSON object")
    return obj


def _credentials(config: dict[str, Any]) -> dict[str, Any]:
    secret_id = config.get("credsSecretName")
    if not secret_id:
        raise InitializerError("config.credsSecretName is required")
    creds = get_secret_json(secret_id)
    missing = [k for k in ("username", "password", "host") if k not in creds]
    if missing:
        raise InitializerError(f"Secret {secret_id} is missing fields: {', '.join(missing)}")
    return creds


def connect(creds: dict[str, Any], *, connect_timeout: int) -> pymysql.connections.Connection:
    return pymysql.connect(
        host=creds["host"],
        port=int(creds.get("port") or DEFAULT_PORT),
        user=creds["username"],
        password=creds["password"],
        client_flag=CLIENT.MULTI_STATEMENTS,
        cursorclass=pymysql.cursors.DictCursor,
        autocommit=True,
        connect_timeout=connect_timeout,
    )


def _ok_packet(cur: Any) -> dict[str, Any]:
    return {
        "affectedRows": cur.rowcount,
        "insertId": cur.lastrowid,
    }


def execute_script(conn: Any, sql_script: str) -> Any:
    """Run a multi-statement script and collect one result per statement.

    MySQL stops at the first failing statement; PyMySQL raises that error
    while advancing to its result set, so every set must be drained.
    """
    results: list[Any] = []
    with conn.cursor() as cur:
        cur.execute(sql_script)
        while True:
            if cur.description is not None:
                results.append(list(cur.fetchall()))
            else:
                results.append(_ok_packet(cur))
            if not cur.nextset():
                break
    if len(results) == 1:
        return results[0]
    return results


def _json_safe(obj: Any) -> Any:
    return json.loads(json.dumps(obj, ensure_ascii=False, default=str))


def _error_details(exc: BaseException) -> dict[str, Any]:
    err: dict[str, Any] = {"name": type(exc).__name__}
    if isinstance(exc, ClientError):
        err["code"] = exc.response.get("Error", {}).get("Code")
    elif isinstance(exc, pymysql.err.MySQLError) and exc.args and isinstance(exc.args[0], int):
        err["errno"] = exc.args[0]
    elif isinstance(exc, json.JSONDecodeError):
        err["code"] = "MalformedSecret"
    return err


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, pymysql.err.MySQLError) and len(exc.args) >= 2:
        return str(exc.args[1])
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message") or str(exc)
    return str(exc) or type(exc).__name__


def handler(event: dict, context: Any) -> dict[str, Any]:
    try:
        settings = HandlerSettings.from_env()
        configure_logging(settings.verbose)

        config = ((event or {}).get("params") or {}).get("config") or {}
        creds = _credentials(config)
        logger.info("Connecting to %s as %s", creds["host"], creds["username"])

        conn = connect(creds, connect_timeout=settings.connect_timeout)
        try:
            sql_script = settings.script_path.read_text(encoding="utf-8")
            results = execute_script(conn, sql_script)
        finally:
            conn.close()

        logger.info("Initialization script %s applied", settings.script_path.name)
        return {"status": "OK", "results": _json_safe(results)}
    except Exception as e:
        logger.exception("Initialization failed")
        return {
            "status": "ERROR",
            "err": _error_details(e),
            "message": _error_message(e),
        }
