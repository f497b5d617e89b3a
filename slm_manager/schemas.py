import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ModelRole(str, Enum):
    MODEL_ROUTER = "model_router"
    TOOL_ROUTER = "tool_router"
    TASK_CLASSIFIER = "task_classifier"
    SUMMARIZER = "summarizer"
    CODE_ASSISTANT = "code_assistant"
    REASONER = "reasoner"
    EMBEDDER = "embedder"
    SENTIMENT_ANALYZER = "sentiment_analyzer"
    CONTENT_MODERATOR = "content_moderator"
    CUSTOM = "custom"


class InferenceBackend(str, Enum):
    MLX = "mlx"
    VLLM = "vllm"
    OLLAMA = "ollama"
    LLAMA_CPP = "llama_cpp"
    EXLLAMAV2 = "exllamav2"


def new_instance_id() -> str:
    return str(uuid.uuid4())


class InstanceConfig(BaseModel):
    id: str = Field(default_factory=new_instance_id)
    role: ModelRole
    backend: InferenceBackend = InferenceBackend.MLX
    model: str = ""
    host: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)
    enabled: bool = True
    auto_start: bool = Field(default=False, alias="autoStart")
    max_context_length: int = Field(default=32768, ge=1, alias="maxContextLength")
    quantization: Optional[str] = None
    custom_args: Optional[List[str]] = Field(default=None, alias="customArgs")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("instance id must not be empty")
        return value

    def to_persisted(self) -> Dict[str, Any]:
        # The id is the key of the persisted mapping, not part of the value.
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})

    @classmethod
    def from_persisted(cls, instance_id: str, data: Dict[str, Any]) -> "InstanceConfig":
        return cls.model_validate({**data, "id": instance_id})


class InstanceStatus(BaseModel):
    id: str
    role: ModelRole
    backend: InferenceBackend
    running: bool = False
    model: Optional[str] = None
    port: Optional[int] = None
    uptime_s: Optional[float] = None
    requests_served: Optional[int] = None
    avg_latency_ms: Optional[float] = None
    error: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    @property
    def healthy(self) -> bool:
        return self.running and self.error is None


class DiscoveredModel(BaseModel):
    id: str
    name: str
    author: Optional[str] = None
    downloads: Optional[int] = None
    size_bytes: Optional[int] = None
    size: Optional[str] = None
    quantization: Optional[str] = None
    backend: InferenceBackend
    installed: bool = False
    install_path: Optional[str] = None
    recommended_roles: List[ModelRole] = Field(default_factory=lambda: [ModelRole.CUSTOM], min_length=1)

    model_config = {"protected_namespaces": ()}
