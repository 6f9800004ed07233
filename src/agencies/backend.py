from __future__ import annotations

from dataclasses import dataclass

from src.agents.chats import ChatService
from src.agents.generation import FreeformBackend, GenerationGateway
from src.pipelines.documents import DocumentService
from src.pipelines.index_sync import IndexSynchronizer
from src.utils.bedrock import BedrockIngestion, BedrockKnowledgeBase, BedrockTextModel
from src.utils.chat_store import ChatStore
from src.utils.context_store import get_context_store
from src.utils.document_registry import DocumentRegistry
from src.utils.object_store import ObjectStore, build_object_store
from src.utils.openai_chat import OpenAIChatModel
from src.utils.settings import Settings, get_settings


@dataclass
class BackendAgency:
    """Wires settings, stores and backends into the services the HTTP layer and CLI use."""

    settings: Settings
    object_store: ObjectStore
    gateway: GenerationGateway
    chats: ChatService
    synchronizer: IndexSynchronizer
    documents: DocumentService

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BackendAgency":
        settings = settings or get_settings()
        freeform: FreeformBackend
        if settings.freeform_provider == "openai":
            freeform = OpenAIChatModel(api_key=settings.openai_api_key, base_url=settings.openai_base)
        else:
            freeform = BedrockTextModel(region=settings.aws_region)
        gateway = GenerationGateway(
            grounded_backend=BedrockKnowledgeBase(region=settings.aws_region),
            freeform_backend=freeform,
            context_store=get_context_store(),
            settings=settings,
        )
        object_store = build_object_store(settings)
        synchronizer = IndexSynchronizer(BedrockIngestion(region=settings.aws_region), object_store, settings)
        return cls(
            settings=settings,
            object_store=object_store,
            gateway=gateway,
            chats=ChatService(ChatStore(), gateway=gateway, title_max_chars=settings.chat_title_max_chars),
            synchronizer=synchronizer,
            documents=DocumentService(
                registry=DocumentRegistry(),
                object_store=object_store,
                synchronizer=synchronizer,
                settings=settings,
            ),
        )


_AGENCY: BackendAgency | None = None


def get_agency() -> BackendAgency:
    global _AGENCY
    if _AGENCY is None:
        _AGENCY = BackendAgency.from_settings()
    return _AGENCY


def set_agency(agency: BackendAgency | None) -> None:
    global _AGENCY
    _AGENCY = agency


def reset_agency() -> None:
    set_agency(None)
