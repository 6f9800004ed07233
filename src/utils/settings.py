from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict

from src.utils.env import load_env_file, read_bool_env, read_int_env, read_str_env

DEFAULT_REGION = "us-east-1"
DEFAULT_FREEFORM_MODEL = "mistral.mistral-small-2402-v1"
DEFAULT_OPENAI_BASE = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4-turbo"
DEFAULT_UPLOAD_MAX_BYTES = 10 * 1024 * 1024

# Named instant-lookup sources and the env var holding each data source id.
NAMED_DATA_SOURCE_ENV = {
    "amp-data-pipgpt": "DATA_SOURCE_ONE_ID",
    "amp-test-data-2": "DATA_SOURCE_TWO_ID",
}


def _parse_data_sources(raw: str | None) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    if not raw:
        return mapping
    for pair in (entry.strip() for entry in raw.split(",")):
        if not pair or ":" not in pair:
            continue
        name, source_id = pair.split(":", 1)
        if name.strip() and source_id.strip():
            mapping[name.strip()] = source_id.strip()
    return mapping


def _named_data_sources() -> Dict[str, str | None]:
    sources: Dict[str, str | None] = {name: read_str_env(env) for name, env in NAMED_DATA_SOURCE_ENV.items()}
    sources.update(_parse_data_sources(os.getenv("LOOKUP_DATA_SOURCES")))
    return sources


@dataclass(frozen=True)
class Settings:
    aws_region: str = DEFAULT_REGION
    s3_bucket_name: str | None = None
    object_store_backend: str = "local"
    knowledge_base_id: str | None = None
    data_source_id: str | None = None
    model_arn: str | None = None
    kms_key_arn: str | None = None
    named_data_sources: Dict[str, str | None] = field(default_factory=dict)
    freeform_provider: str = "bedrock"
    freeform_model_id: str = DEFAULT_FREEFORM_MODEL
    openai_api_key: str | None = None
    openai_base: str = DEFAULT_OPENAI_BASE
    openai_model: str = DEFAULT_OPENAI_MODEL
    context_window_turns: int = 5
    context_max_turns: int = 50
    context_ttl_seconds: int = 86400
    chat_title_max_chars: int = 30
    presigned_url_ttl_seconds: int = 3600
    upload_max_bytes: int = DEFAULT_UPLOAD_MAX_BYTES
    ingestion_detach: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        load_env_file()
        bucket = read_str_env("S3_BUCKET_NAME")
        backend = (read_str_env("OBJECT_STORE_BACKEND") or ("s3" if bucket else "local")).lower()
        window = read_int_env("CONTEXT_WINDOW_TURNS", 5)
        return cls(
            aws_region=read_str_env("AWS_REGION", DEFAULT_REGION) or DEFAULT_REGION,
            s3_bucket_name=bucket,
            object_store_backend=backend,
            knowledge_base_id=read_str_env("KNOWLEDGE_BASE_ID"),
            data_source_id=read_str_env("DATA_SOURCE_ID"),
            model_arn=read_str_env("MODEL_ARN"),
            kms_key_arn=read_str_env("KMS_KEY_ARN"),
            named_data_sources=_named_data_sources(),
            freeform_provider=(read_str_env("FREEFORM_PROVIDER", "bedrock") or "bedrock").lower(),
            freeform_model_id=read_str_env("FREEFORM_MODEL_ID", DEFAULT_FREEFORM_MODEL) or DEFAULT_FREEFORM_MODEL,
            openai_api_key=read_str_env("OPENAI_API_KEY"),
            openai_base=read_str_env("OPENAI_BASE", DEFAULT_OPENAI_BASE) or DEFAULT_OPENAI_BASE,
            openai_model=read_str_env("OPENAI_MODEL", DEFAULT_OPENAI_MODEL) or DEFAULT_OPENAI_MODEL,
            context_window_turns=window,
            context_max_turns=max(read_int_env("CONTEXT_MAX_TURNS", 50), window),
            context_ttl_seconds=read_int_env("CONTEXT_TTL_SECONDS", 86400, minimum=60),
            chat_title_max_chars=read_int_env("CHAT_TITLE_MAX_CHARS", 30),
            presigned_url_ttl_seconds=read_int_env("PRESIGNED_URL_TTL_SECONDS", 3600, minimum=60),
            upload_max_bytes=read_int_env("UPLOAD_MAX_BYTES", DEFAULT_UPLOAD_MAX_BYTES),
            ingestion_detach=read_bool_env("INGESTION_DETACH", False),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
