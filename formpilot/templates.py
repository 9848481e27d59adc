"""
Pre-authored step templates.

A template is a named step list for one kind of document/form, found by
matching the task name against the template's document-type label and name.
"""

import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import StepValidationError
from .models import Step, parse_steps

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_label(text: Optional[str]) -> str:
    """Lower-case, trim and collapse whitespace."""
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


@dataclass(frozen=True)
class StepTemplate:
    """A pre-authored step list for one document type."""

    name: str
    document_type: str
    target_url: str
    steps: Tuple[Step, ...] = field(default_factory=tuple)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def matches(self, task_name: str) -> bool:
        """
        Check whether this template serves a task name.

        The normalized task name matches if it contains the document type,
        contains the template name, or is contained in the template name.
        """
        wanted = normalize_label(task_name)
        if not wanted:
            return False
        doc_type = normalize_label(self.document_type)
        name = normalize_label(self.name)
        if doc_type and doc_type in wanted:
            return True
        return bool(name) and (wanted in name or name in wanted)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepTemplate":
        """Create from dictionary."""
        if not isinstance(data, Mapping):
            raise StepValidationError("Template entry must be a mapping")
        name = data.get("name")
        if not name:
            raise StepValidationError("Template is missing a name")
        kwargs = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(
            name=name,
            document_type=data.get("document_type", data.get("documentType", "")) or "",
            target_url=data.get("target_url", data.get("url", "")) or "",
            steps=parse_steps(data.get("steps", [])),
            **kwargs,
        )


class TemplateStore(ABC):
    """Abstract source of pre-authored templates."""

    @abstractmethod
    def list_templates(self) -> List[StepTemplate]:
        """Return all templates ordered by name."""
        pass

    def find_by_task_name(self, task_name: str) -> Optional[StepTemplate]:
        """Return the first template matching the task name, or None."""
        for template in self.list_templates():
            if template.matches(task_name):
                return template
        return None


class InMemoryTemplateStore(TemplateStore):
    """Templates held in memory."""

    def __init__(self, templates: Optional[Iterable[StepTemplate]] = None):
        self._templates: Dict[str, StepTemplate] = {}
        self._lock = threading.Lock()
        for template in templates or []:
            self.add(template)

    def add(self, template: StepTemplate) -> StepTemplate:
        """Add or replace a template."""
        with self._lock:
            self._templates[template.id] = template
        return template

    def remove(self, template_id: str) -> bool:
        """Delete a template by id."""
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def list_templates(self) -> List[StepTemplate]:
        with self._lock:
            return sorted(self._templates.values(), key=lambda t: t.name)


class YamlTemplateStore(TemplateStore):
    """
    Templates loaded from a YAML file.

    Expected layout::

        templates:
          - name: Passport Renewal
            document_type: passport
            target_url: https://example.gov/passport
            steps:
              - {id: "1", action: visit, target: "https://example.gov/passport"}

    The file is re-read when its modification time changes.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._cache: List[StepTemplate] = []
        self._mtime: Optional[float] = None
        self._lock = threading.Lock()

    def list_templates(self) -> List[StepTemplate]:
        with self._lock:
            if not self.path.exists():
                if self._mtime is not None:
                    logger.warning(f"Template file {self.path} disappeared")
                self._cache, self._mtime = [], None
                return []
            mtime = self.path.stat().st_mtime
            if mtime != self._mtime:
                self._cache = self._load()
                self._mtime = mtime
            return list(self._cache)

    def _load(self) -> List[StepTemplate]:
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise StepValidationError(f"Invalid YAML in {self.path}: {e}")

        if not data:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("templates"), list):
            raise StepValidationError(f"{self.path} must contain a 'templates' list")

        templates = [StepTemplate.from_dict(item) for item in data["templates"]]
        logger.info(f"Loaded {len(templates)} templates from {self.path}")
        return sorted(templates, key=lambda t: t.name)
