"""
Model provisioning for the inference group.

After the stack is up, the embedding models listed in the stack file are
pulled into Ollama if they are not installed yet. The default is
granite-embedding:278m (768-dim cosine embeddings).
"""

import json
import logging
from typing import Optional, Dict, List, Callable
from dataclasses import dataclass
import requests

from .config import StackConfig

logger = logging.getLogger(__name__)


@dataclass
class ModelPullProgress:
    """Progress line streamed by Ollama while pulling."""
    model: str
    status: str
    completed_bytes: int = 0
    total_bytes: int = 0

    @property
    def percent(self) -> float:
        if self.total_bytes == 0:
            return 0
        return (self.completed_bytes / self.total_bytes) * 100


class ModelManager:
    """Ensures the configured Ollama models are installed."""

    def __init__(self, config: StackConfig):
        self.config = config
        self.base_url = config.ollama_url.rstrip("/")

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", 30)
        return requests.request(method, f"{self.base_url}{endpoint}", **kwargs)

    def is_available(self) -> bool:
        try:
            return self._request("GET", "/api/tags").status_code == 200
        except requests.RequestException:
            return False

    def installed(self) -> List[str]:
        """Names of installed models, with and without the implicit :latest tag."""
        try:
            response = self._request("GET", "/api/tags")
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to list models: {e}")
            return []
        names = []
        for model in response.json().get("models", []):
            name = model.get("name", "")
            names.append(name)
            if name.endswith(":latest"):
                names.append(name[: -len(":latest")])
        return names

    def pull_model(
        self,
        model_name: str,
        progress_callback: Optional[Callable[[ModelPullProgress], None]] = None,
    ) -> bool:
        """Pull a model, streaming progress; True once Ollama reports success."""
        logger.info(f"Pulling model: {model_name}")
        try:
            response = requests.post(
                f"{self.base_url}/api/pull",
                json={"name": model_name},
                stream=True,
                timeout=7200,  # large models
            )
            response.raise_for_status()
            for line in response.iter_lines():
                if not line:
                    continue
                data = json.loads(line)
                if "error" in data:
                    logger.error(f"Pull error for {model_name}: {data['error']}")
                    return False
                status = data.get("status", "")
                if progress_callback:
                    progress_callback(ModelPullProgress(
                        model=model_name,
                        status=status,
                        completed_bytes=data.get("completed", 0),
                        total_bytes=data.get("total", 0),
                    ))
                if status == "success":
                    logger.info(f"Model ready: {model_name}")
                    return True
        except (requests.RequestException, json.JSONDecodeError) as e:
            logger.error(f"Failed to pull model {model_name}: {e}")
            return False
        logger.error(f"Pull of {model_name} ended without success")
        return False

    def ensure_models(
        self,
        models: Optional[List[str]] = None,
        progress_callback: Optional[Callable[[ModelPullProgress], None]] = None,
    ) -> Dict[str, bool]:
        """Pull each missing model; returns model name -> ready."""
        models = self.config.models if models is None else models
        installed = set(self.installed())
        results = {}
        for model in models:
            if model in installed:
                logger.info(f"Model already installed: {model}")
                results[model] = True
            else:
                results[model] = self.pull_model(model, progress_callback)
        return results
