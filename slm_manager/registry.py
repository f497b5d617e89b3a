import platform
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .schemas import InferenceBackend, InstanceConfig, ModelRole


DEFAULT_HOST = "127.0.0.1"
DEFAULT_MAX_CONTEXT = 32768
DEFAULT_QUANTIZATION = "4bit"
AUTO_START_ROLES = frozenset({ModelRole.MODEL_ROUTER, ModelRole.CODE_ASSISTANT})


@dataclass(frozen=True)
class RoleInfo:
    role: ModelRole
    display_name: str
    description: str
    recommended_models: Tuple[str, ...]
    default_port: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.role.value,
            "display_name": self.display_name,
            "description": self.description,
            "recommended_models": list(self.recommended_models),
            "default_port": self.default_port,
        }


@dataclass(frozen=True)
class BackendInfo:
    backend: InferenceBackend
    display_name: str
    supports_embeddings: bool
    launchable: bool
    shared_server: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.backend.value,
            "display_name": self.display_name,
            "supports_embeddings": self.supports_embeddings,
            "launchable": self.launchable,
            "shared_server": self.shared_server,
            "available": backend_is_available(self.backend),
        }


ROLE_CATALOG: Dict[ModelRole, RoleInfo] = {
    info.role: info
    for info in (
        RoleInfo(
            ModelRole.MODEL_ROUTER,
            "Model Router",
            "Routes requests to optimal models based on task complexity",
            ("katanemo/Arch-Router-1.5B", "routellm/mf-router"),
            8008,
        ),
        RoleInfo(
            ModelRole.TOOL_ROUTER,
            "Tool Router",
            "Classifies and routes tool/function calls",
            ("katanemo/Arch-Router-1.5B", "mlx-community/Qwen2.5-Coder-1.5B-Instruct-4bit"),
            8009,
        ),
        RoleInfo(
            ModelRole.TASK_CLASSIFIER,
            "Task Classifier",
            "Analyzes task type and complexity dimensions",
            ("microsoft/deberta-v3-base", "katanemo/Arch-Router-1.5B"),
            8010,
        ),
        RoleInfo(
            ModelRole.SUMMARIZER,
            "Summarizer",
            "Compresses context for long conversations",
            ("mlx-community/Qwen2.5-7B-Instruct-4bit", "mlx-community/Llama-3.2-3B-Instruct-4bit"),
            8011,
        ),
        RoleInfo(
            ModelRole.CODE_ASSISTANT,
            "Code Assistant",
            "Primary model for code generation and editing",
            (
                "mlx-community/Qwen2.5-Coder-32B-Instruct-4bit",
                "mlx-community/DeepSeek-R1-Distill-Qwen-32B-4bit",
            ),
            8000,
        ),
        RoleInfo(
            ModelRole.REASONER,
            "Reasoner",
            "Handles complex multi-step reasoning",
            ("mlx-community/DeepSeek-R1-Distill-Qwen-32B-4bit", "mlx-community/Qwen2.5-32B-Instruct-4bit"),
            8001,
        ),
        RoleInfo(
            ModelRole.EMBEDDER,
            "Embedder",
            "Generates embeddings for semantic operations",
            ("nomic-ai/nomic-embed-text-v1.5", "BAAI/bge-m3"),
            8012,
        ),
        RoleInfo(
            ModelRole.SENTIMENT_ANALYZER,
            "Sentiment Analyzer",
            "Analyzes emotional context and toxicity",
            (
                "unitary/toxic-bert",
                "SamLowe/roberta-base-go_emotions",
                "cardiffnlp/twitter-roberta-base-sentiment-latest",
            ),
            8013,
        ),
        RoleInfo(
            ModelRole.CONTENT_MODERATOR,
            "Content Moderator",
            "Pre/post-hook safety filtering for harmful content",
            ("unitary/unbiased-toxic-roberta", "martin-ha/toxic-comment-model"),
            8014,
        ),
        RoleInfo(ModelRole.CUSTOM, "Custom", "User-defined model role", (), 8080),
    )
}


BACKEND_CATALOG: Dict[InferenceBackend, BackendInfo] = {
    InferenceBackend.MLX: BackendInfo(InferenceBackend.MLX, "MLX (Apple Silicon)", True, True),
    InferenceBackend.VLLM: BackendInfo(InferenceBackend.VLLM, "vLLM (CUDA)", False, False),
    InferenceBackend.OLLAMA: BackendInfo(InferenceBackend.OLLAMA, "Ollama", True, True, shared_server=True),
    InferenceBackend.LLAMA_CPP: BackendInfo(InferenceBackend.LLAMA_CPP, "llama.cpp", True, True),
    InferenceBackend.EXLLAMAV2: BackendInfo(InferenceBackend.EXLLAMAV2, "ExLlamaV2", False, False),
}


def role_info(role: ModelRole) -> RoleInfo:
    return ROLE_CATALOG[ModelRole(role)]


def backend_info(backend: InferenceBackend) -> BackendInfo:
    return BACKEND_CATALOG[InferenceBackend(backend)]


def backend_is_available(
    backend: InferenceBackend,
    system: Optional[str] = None,
    machine: Optional[str] = None,
) -> bool:
    """Whether the backend can run on this host.

    ``system``/``machine`` default to ``platform.system()``/``platform.machine()``.
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    is_mac = system == "darwin"
    backend = InferenceBackend(backend)
    if backend == InferenceBackend.MLX:
        return is_mac and machine in ("arm64", "aarch64")
    if backend in (InferenceBackend.VLLM, InferenceBackend.EXLLAMAV2):
        return not is_mac
    return True


def default_config_for(role: ModelRole) -> InstanceConfig:
    info = role_info(role)
    return InstanceConfig(
        role=info.role,
        backend=InferenceBackend.MLX,
        model=info.recommended_models[0] if info.recommended_models else "",
        host=DEFAULT_HOST,
        port=info.default_port,
        enabled=True,
        auto_start=info.role in AUTO_START_ROLES,
        max_context_length=DEFAULT_MAX_CONTEXT,
        quantization=DEFAULT_QUANTIZATION,
        custom_args=None,
    )
