from __future__ import annotations

import argparse
import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict

import yaml
import uvicorn

from src.agencies.backend import get_agency, reset_agency
from src.utils.context_store import reset_context_store
from src.utils.env import load_env_file
from src.utils.errors import ChatServiceError
from src.utils.logging import get_logger
from src.utils.settings import reset_settings

load_env_file()
log = get_logger(__name__)

_CONFIG_ENV_MAP: Dict[str, Dict[str, str]] = {
    "aws": {
        "region": "AWS_REGION",
        "bucket": "S3_BUCKET_NAME",
        "object_store": "OBJECT_STORE_BACKEND",
    },
    "bedrock": {
        "knowledge_base_id": "KNOWLEDGE_BASE_ID",
        "data_source_id": "DATA_SOURCE_ID",
        "data_source_one_id": "DATA_SOURCE_ONE_ID",
        "data_source_two_id": "DATA_SOURCE_TWO_ID",
        "model_arn": "MODEL_ARN",
        "kms_key_arn": "KMS_KEY_ARN",
        "freeform_model_id": "FREEFORM_MODEL_ID",
        "freeform_provider": "FREEFORM_PROVIDER",
    },
    "openai": {
        "base": "OPENAI_BASE",
        "model": "OPENAI_MODEL",
    },
    "context": {
        "window_turns": "CONTEXT_WINDOW_TURNS",
        "max_turns": "CONTEXT_MAX_TURNS",
        "ttl_seconds": "CONTEXT_TTL_SECONDS",
    },
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    for section, env_map in _CONFIG_ENV_MAP.items():
        section_cfg = config.get(section) or {}
        for key, env_var in env_map.items():
            value = section_cfg.get(key)
            if value is not None and value != "":
                os.environ[env_var] = str(value)

    if (config.get("openai") or {}).get("api_key"):
        log.warning("config_openai_key_ignored", msg="Use .env for OPENAI_API_KEY")

    auth_cfg = config.get("auth", {}) or {}
    if "api_token" in auth_cfg:
        log.warning("config_api_token_ignored", msg="Use .env for API_AUTH_TOKEN")
    if rate := auth_cfg.get("rate_limit"):
        os.environ["API_RATE_LIMIT"] = str(rate)
    if window := auth_cfg.get("rate_window"):
        os.environ["API_RATE_WINDOW"] = str(window)

    reset_settings()
    reset_context_store()
    reset_agency()


def _run(coro):
    try:
        return asyncio.run(coro)
    except ChatServiceError as exc:
        raise SystemExit(f"Error ({exc.status_code}): {exc.detail}") from exc


def cmd_chats(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    chats = get_agency().chats
    summaries = _run(chats.list_pinned(args.user) if args.pinned else chats.list_chats(args.user))
    if not summaries:
        print("No pinned chats." if args.pinned else "No chats.")
        return
    for summary in summaries:
        print(f"{summary.id} | {summary.title} | created={summary.created_at.isoformat()}")


def cmd_ask(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = get_agency()
    if args.save or args.chat_id:
        chat_id, reply = _run(agency.chats.converse(args.user, args.question, mode=args.mode, chat_id=args.chat_id))
        print(reply)
        print(f"Chat: {chat_id}")
        return
    reply = _run(agency.gateway.answer(args.question, args.user, args.mode))
    print(reply)


def cmd_lookup(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    print(_run(get_agency().gateway.instant_lookup(args.question, args.source)))


def cmd_upload(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    path = Path(args.path)
    if not path.is_file():
        raise SystemExit(f"File not found: {args.path}")
    content_type = args.content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    record = _run(get_agency().documents.upload(args.user, path.name, path.read_bytes(), content_type))
    log.info("cli_upload_complete", document_id=record.id, file_url=record.file_url)
    print(f"Uploaded {record.file_name} as {record.id}")


def cmd_documents(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    records = _run(get_agency().documents.list_documents(args.user))
    if not records:
        print("No documents.")
        return
    for record in records:
        print(f"{record.id} | {record.file_name} | {record.content_type} | uploaded={record.uploaded_at.isoformat()}")


def cmd_delete_document(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    record = _run(get_agency().documents.delete(args.document_id))
    print(f"Deleted {record.file_name} ({record.id})")


def cmd_index_sync(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    outcome = _run(get_agency().synchronizer.resync(strict=True))
    print(f"Status: {outcome.status}")
    if outcome.job_id:
        print(f"Job: {outcome.job_id}")
    if outcome.client_token:
        print(f"Client token: {outcome.client_token}")


def cmd_index_jobs(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    jobs = get_agency().synchronizer.history(args.limit)
    if not jobs:
        print("No ingestion jobs recorded.")
        return
    for job in jobs:
        print(
            f"{job.get('started_at', 'n/a')} | {job.get('status')} | reason={job.get('reason')}"
            f" | job={job.get('job_id') or 'n/a'}"
        )
        if job.get("error"):
            print(f"   error: {job['error']}")


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Knowledge base chat backend CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_chats = sub.add_parser("chats", help="List a user's chats")
    p_chats.add_argument("--user", required=True)
    p_chats.add_argument("--pinned", action="store_true", help="List pinned chats instead")
    p_chats.set_defaults(func=cmd_chats)

    p_ask = sub.add_parser("ask", help="Ask the assistant a question")
    p_ask.add_argument("question")
    p_ask.add_argument("--user", required=True)
    p_ask.add_argument("--mode", choices=["grounded", "freeform"], default="grounded")
    p_ask.add_argument("--save", action="store_true", help="Persist the exchange as a new chat")
    p_ask.add_argument("--chat-id", dest="chat_id", help="Append the exchange to an existing chat")
    p_ask.set_defaults(func=cmd_ask)

    p_lookup = sub.add_parser("lookup", help="Instant lookup against a named data source")
    p_lookup.add_argument("question")
    p_lookup.add_argument("--source", required=True)
    p_lookup.set_defaults(func=cmd_lookup)

    p_upload = sub.add_parser("upload", help="Upload a document and trigger ingestion")
    p_upload.add_argument("path")
    p_upload.add_argument("--user", required=True)
    p_upload.add_argument("--content-type", dest="content_type")
    p_upload.set_defaults(func=cmd_upload)

    p_docs = sub.add_parser("documents", help="List a user's documents")
    p_docs.add_argument("--user", required=True)
    p_docs.set_defaults(func=cmd_documents)

    p_del = sub.add_parser("delete-document", help="Delete a document and resync the index")
    p_del.add_argument("document_id")
    p_del.set_defaults(func=cmd_delete_document)

    p_sync = sub.add_parser("index-sync", help="Start a full knowledge base re-ingestion")
    p_sync.set_defaults(func=cmd_index_sync)

    p_jobs = sub.add_parser("index-jobs", help="Show recorded ingestion jobs")
    p_jobs.add_argument("--limit", type=int, default=20)
    p_jobs.set_defaults(func=cmd_index_jobs)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="src.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
