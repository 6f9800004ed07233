from __future__ import annotations

import json
from typing import Any, Dict

import boto3

from src.utils.logging import get_logger

log = get_logger(__name__)

DATA_SOURCE_FILTER_KEY = "x-amz-bedrock-kb-data-source-id"


class BedrockConfigError(RuntimeError):
    """Raised when a knowledge base, model or data source id is not configured."""


def _require(value: str | None, name: str) -> str:
    if not value:
        raise BedrockConfigError(f"{name} is not configured")
    return value


class BedrockKnowledgeBase:
    """Retrieve-and-generate against a knowledge base via ``bedrock-agent-runtime``."""

    def __init__(self, *, region: str, client: Any | None = None) -> None:
        self._client = client or boto3.client("bedrock-agent-runtime", region_name=region)

    def retrieve_and_generate(
        self,
        prompt: str,
        *,
        knowledge_base_id: str | None,
        model_arn: str | None,
        kms_key_arn: str | None = None,
        data_source_id: str | None = None,
    ) -> str:
        kb_config: Dict[str, Any] = {
            "knowledgeBaseId": _require(knowledge_base_id, "KNOWLEDGE_BASE_ID"),
            "modelArn": _require(model_arn, "MODEL_ARN"),
        }
        if data_source_id:
            kb_config["retrievalConfiguration"] = {
                "vectorSearchConfiguration": {
                    "filter": {"equals": {"key": DATA_SOURCE_FILTER_KEY, "value": data_source_id}},
                }
            }
        request: Dict[str, Any] = {
            "input": {"text": prompt},
            "retrieveAndGenerateConfiguration": {
                "type": "KNOWLEDGE_BASE",
                "knowledgeBaseConfiguration": kb_config,
            },
        }
        if kms_key_arn:
            request["sessionConfiguration"] = {"kmsKeyArn": kms_key_arn}
        response = self._client.retrieve_and_generate(**request)
        return ((response or {}).get("output") or {}).get("text") or ""


class BedrockTextModel:
    """Free-form completion through ``bedrock-runtime`` ``invoke_model``."""

    def __init__(self, *, region: str, client: Any | None = None) -> None:
        self._client = client or boto3.client("bedrock-runtime", region_name=region)

    def generate(self, prompt: str, *, model_id: str, params: Dict[str, Any]) -> str:
        body = json.dumps({"prompt": prompt, **params})
        response = self._client.invoke_model(
            modelId=model_id,
            body=body,
            contentType="application/json",
            accept="application/json",
        )
        raw = response["body"].read()
        payload = json.loads(raw) if raw else {}
        outputs = payload.get("outputs") or []
        if not outputs:
            return ""
        return str(outputs[0].get("text") or "")


class BedrockIngestion:
    """Starts knowledge-base ingestion jobs via ``bedrock-agent``."""

    def __init__(self, *, region: str, client: Any | None = None) -> None:
        self._client = client or boto3.client("bedrock-agent", region_name=region)

    def start_ingestion_job(
        self,
        *,
        knowledge_base_id: str | None,
        data_source_id: str | None,
        client_token: str,
        description: str,
    ) -> str | None:
        response = self._client.start_ingestion_job(
            knowledgeBaseId=_require(knowledge_base_id, "KNOWLEDGE_BASE_ID"),
            dataSourceId=_require(data_source_id, "DATA_SOURCE_ID"),
            clientToken=client_token,
            description=description,
        )
        job = (response or {}).get("ingestionJob") or {}
        log.info("bedrock_ingestion_job_accepted", job_id=job.get("ingestionJobId"), status=job.get("status"))
        return job.get("ingestionJobId")
