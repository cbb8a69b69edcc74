from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Optional
import re

import jinja2

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig


class FileOperation(Operation):
    """Ensure files exist with the requested contents and ownership.

    Content comes either from ``content`` or from a ``template`` rendered
    with the host variables merged with the operation's ``variables``.
    Templates containing Jinja markers go through Jinja2; anything else is
    rendered with :class:`string.Template`. Relative template paths are
    looked up in ``template_dir``.
    """

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "directory"}:
            raise ValueError("file operation state must be 'present', 'absent', or 'directory'")
        raw_content = spec.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = self._parse_mode(spec.get("mode"))
        self.template = spec.get("template") or spec.get("src")
        self.variables = spec.get("variables", {})
        self.template_dir = spec.get("template_dir")
        self.owner = self._parse_principal(spec.get("owner"))
        self.group = self._parse_principal(spec.get("group"))
        self.recurse = bool(self._coerce_bool(spec.get("recurse", False)))
        self.ownership_only = self.state == "present" and raw_content is None and not self.template
        if self.template is not None:
            self.template = str(self.template)
        if not isinstance(self.variables, dict):
            raise ValueError("file operation variables must be a mapping")
        if self.template_dir is not None:
            self.template_dir = Path(str(self.template_dir))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.state == "directory":
            changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        elif self.state == "absent":
            removed = executor.remove_path(self.path)
            detail = "removed" if removed else "noop"
            changed = removed
        elif self.ownership_only:
            changed, detail = False, "noop"
        else:
            content = self._render_content(host)
            changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        if self.state != "absent":
            changed, detail = self._apply_ownership(executor, changed, detail)
        return ActionResult(
            host=host.name, action="file", changed=changed, details=detail, resource=str(self.path)
        )

    def _render_content(self, host: HostConfig) -> str:
        if not self.template:
            return self.content
        template_path = Path(self.template).expanduser()
        if not template_path.is_absolute() and self.template_dir is not None:
            template_path = self.template_dir / template_path
        template_text = template_path.read_text()
        context: dict[str, object] = dict(host.variables)
        context.update(self.variables)
        if self._looks_like_jinja(template_text):
            return self._render_jinja(template_text, context)
        return Template(template_text).safe_substitute(context)

    def _apply_ownership(self, executor: Executor, changed: bool, detail: str) -> tuple[bool, str]:
        if self.owner is None and self.group is None:
            return changed, detail
        chown_changed, chown_detail = executor.set_ownership(
            self.path, owner=self.owner, group=self.group, recurse=self.recurse
        )
        if chown_changed:
            changed = True
            detail = f"{detail}, {chown_detail}" if detail and detail != "noop" else chown_detail
        return changed, detail

    @staticmethod
    def _parse_mode(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        base = 8 if text.startswith("0") else 10
        return int(text, base)

    @staticmethod
    def _parse_principal(value: Optional[object]) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _render_jinja(template_text: str, context: dict[str, object]) -> str:
        env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True)
        tmpl = env.from_string(template_text)
        return tmpl.render(**context)

    @staticmethod
    def _looks_like_jinja(template_text: str) -> bool:
        return bool(re.search(r"{[{%]", template_text))
