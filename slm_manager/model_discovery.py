import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import httpx

from .schemas import DiscoveredModel, InferenceBackend, ModelRole


logger = logging.getLogger("uvicorn.error")

HF_CACHE_PREFIX = "models--"
MIN_QUERY_LENGTH = 3
DEFAULT_SEARCH_LIMIT = 20
COMMUNITY_PREFIXES = {InferenceBackend.MLX: "mlx-community"}
_OLLAMA_LIST_TIMEOUT_S = 15.0
_WS_RE = re.compile(r"\s{2,}|\t")


@dataclass(frozen=True)
class RoleRule:
    any_of: Tuple[str, ...]
    roles: Tuple[ModelRole, ...]
    none_of: Tuple[str, ...] = ()

    def matches(self, lowered: str) -> bool:
        if not any(token in lowered for token in self.any_of):
            return False
        return not any(token in lowered for token in self.none_of)


ROLE_RULES: Tuple[RoleRule, ...] = (
    RoleRule(("arch-router", "router"), (ModelRole.MODEL_ROUTER, ModelRole.TOOL_ROUTER)),
    RoleRule(("coder", "code"), (ModelRole.CODE_ASSISTANT,)),
    RoleRule(("deepseek-r1", "reason"), (ModelRole.REASONER,)),
    RoleRule(("embed", "bge", "nomic"), (ModelRole.EMBEDDER,)),
    RoleRule(("qwen",), (ModelRole.SUMMARIZER, ModelRole.TASK_CLASSIFIER), none_of=("coder",)),
)

QUANTIZATION_HINTS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("4bit", "q4"), "4bit"),
    (("8bit", "q8"), "8bit"),
    (("fp16",), "fp16"),
)


def infer_roles(identifier: str, rules: Sequence[RoleRule] = ROLE_RULES) -> List[ModelRole]:
    lowered = (identifier or "").lower()
    roles: List[ModelRole] = []
    for rule in rules:
        if rule.matches(lowered):
            for role in rule.roles:
                if role not in roles:
                    roles.append(role)
    return roles or [ModelRole.CUSTOM]


def infer_quantization(identifier: str) -> Optional[str]:
    lowered = (identifier or "").lower()
    for tokens, label in QUANTIZATION_HINTS:
        if any(token in lowered for token in tokens):
            return label
    return None


def format_bytes(size: int) -> str:
    value = float(max(0, size))
    for unit in ("bytes", "KB", "MB", "GB"):
        if value < 1000.0:
            return f"{int(value)} bytes" if unit == "bytes" else f"{value:.1f} {unit}"
        value /= 1000.0
    return f"{value:.1f} TB"


def parse_cache_entry(dirname: str) -> Optional[Tuple[str, str]]:
    """``models--org--name`` -> ``("org", "name")``; extra ``--`` segments join with ``-``."""
    if not dirname.startswith(HF_CACHE_PREFIX):
        return None
    parts = dirname[len(HF_CACHE_PREFIX):].split("--")
    if len(parts) < 2 or not parts[0] or not all(parts[1:]):
        return None
    return parts[0], "-".join(parts[1:])


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                # lstat: HF snapshots symlink into blobs, which are counted once.
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def scan_cache_dirs(paths: Iterable[str]) -> List[DiscoveredModel]:
    """Blocking walk of the local model caches; run it in a worker thread."""
    models: List[DiscoveredModel] = []
    seen = set()
    for raw in paths:
        root = Path(raw).expanduser()
        try:
            entries = sorted(os.listdir(root))
        except OSError:
            continue
        for item in entries:
            parsed = parse_cache_entry(item)
            if parsed is None:
                continue
            full_path = root / item
            if not full_path.is_dir():
                continue
            author, name = parsed
            model_id = f"{author}/{name}"
            if model_id in seen:
                continue
            seen.add(model_id)
            size = directory_size(full_path)
            models.append(
                DiscoveredModel(
                    id=model_id,
                    name=name,
                    author=author,
                    size_bytes=size,
                    size=format_bytes(size),
                    quantization=infer_quantization(model_id),
                    backend=InferenceBackend.MLX,
                    installed=True,
                    install_path=str(full_path),
                    recommended_roles=infer_roles(model_id),
                )
            )
    return models


def parse_ollama_list(output: str) -> List[DiscoveredModel]:
    models: List[DiscoveredModel] = []
    lines = [line for line in (output or "").splitlines() if line.strip()]
    # First line is the NAME/ID/SIZE/MODIFIED header.
    for line in lines[1:]:
        columns = [col for col in _WS_RE.split(line.strip()) if col]
        if not columns:
            continue
        name = columns[0]
        size = columns[2] if len(columns) > 2 else None
        models.append(
            DiscoveredModel(
                id=f"ollama/{name}",
                name=name,
                author="ollama",
                size=size,
                quantization=infer_quantization(name),
                backend=InferenceBackend.OLLAMA,
                installed=True,
                recommended_roles=infer_roles(name),
            )
        )
    return models


class ModelDiscovery:
    def __init__(
        self,
        client: Any,
        *,
        cache_paths: Sequence[str],
        hub_base_url: str = "https://huggingface.co",
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        search_timeout_s: float = 10.0,
        ollama_path: Optional[str] = "ollama",
    ) -> None:
        self.client = client
        self.cache_paths = list(cache_paths)
        self.hub_base_url = hub_base_url.rstrip("/")
        self.search_limit = search_limit
        self.search_timeout_s = search_timeout_s
        self.ollama_path = ollama_path

    async def discover_installed(self) -> List[DiscoveredModel]:
        cached, ollama = await asyncio.gather(self._scan_caches(), self.list_ollama_models())
        return [*cached, *ollama]

    async def _scan_caches(self) -> List[DiscoveredModel]:
        try:
            return await asyncio.to_thread(scan_cache_dirs, self.cache_paths)
        except Exception as exc:
            logger.warning("Local cache scan failed: %s", exc)
            return []

    async def list_ollama_models(self) -> List[DiscoveredModel]:
        if not self.ollama_path:
            return []
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ollama_path,
                "list",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.info("Ollama listing unavailable: %s", exc)
            return []
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_OLLAMA_LIST_TIMEOUT_S)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("ollama list timed out")
            return []
        if proc.returncode != 0:
            return []
        try:
            return parse_ollama_list(stdout.decode("utf-8", errors="replace"))
        except Exception as exc:
            logger.warning("Could not parse ollama list output: %s", exc)
            return []

    async def search(self, query: str, backend: InferenceBackend) -> List[DiscoveredModel]:
        cleaned = (query or "").strip()
        if len(cleaned) < MIN_QUERY_LENGTH:
            return []
        backend = InferenceBackend(backend)
        prefix = COMMUNITY_PREFIXES.get(backend)
        search_term = f"{prefix}/{cleaned}" if prefix else cleaned
        try:
            resp = await self.client.get(
                f"{self.hub_base_url}/api/models",
                params={"search": search_term, "limit": self.search_limit},
                timeout=self.search_timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Model hub search failed: HTTP %s", exc.response.status_code)
            return []
        except Exception as exc:
            logger.warning("Model hub search failed: %s", exc)
            return []
        if not isinstance(payload, list):
            return []
        results: List[DiscoveredModel] = []
        for item in payload[: self.search_limit]:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            model_id = str(item["id"])
            downloads = item.get("downloads")
            results.append(
                DiscoveredModel(
                    id=model_id,
                    name=model_id.rsplit("/", 1)[-1],
                    author=item.get("author") or (model_id.split("/", 1)[0] if "/" in model_id else None),
                    downloads=downloads if isinstance(downloads, int) else None,
                    quantization=infer_quantization(model_id),
                    backend=backend,
                    installed=False,
                    recommended_roles=infer_roles(model_id),
                )
            )
        return results
