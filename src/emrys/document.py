"""In-memory model of the declarative system configuration document."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from emrys.errors import MutationError

LOGGER = logging.getLogger(__name__)

CLOSING_DELIMITER = "\n}"
OWNER_TOKEN = "__OWNER_NAME__"
_OWNER_DECLARATION = re.compile(r'system\.primaryUser\s*=\s*"([^"]+)"')


@dataclass(frozen=True, slots=True)
class Section:
    """A managed block keyed by its marker.

    The block is inserted before the document's closing delimiter, or, when
    ``container`` is set, before the first ``container_close`` that follows
    the container's opening text (used to extend a list declaration in place).
    ``existing`` lists declarations the operator may already have written; if
    any is present the block is skipped, since Nix rejects duplicate attributes.
    """

    marker: str
    template: str
    container: str | None = None
    container_close: str = "\n  ];"
    existing: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Placeholder:
    """A sentinel token and the places its value may come from, in order."""

    token: str
    declaration: re.Pattern[str] | None = None
    env_var: str | None = None
    fallback: str | None = None

    def resolve(self, text: str, env: Mapping[str, str]) -> str:
        if self.declaration is not None:
            match = self.declaration.search(text)
            if match:
                return match.group(1)
        if self.env_var:
            value = env.get(self.env_var, "").strip()
            if value:
                return value
        if self.fallback:
            return self.fallback
        msg = f"no value available for placeholder {self.token}"
        raise MutationError(msg)


def owner_placeholder(home: Path | None = None) -> Placeholder:
    """Owner account: existing primaryUser declaration, then $USER, then home dir name."""
    home_dir = home or Path.home()
    return Placeholder(
        token=OWNER_TOKEN,
        declaration=_OWNER_DECLARATION,
        env_var="USER",
        fallback=home_dir.name or None,
    )


class ConfigDocument:
    """Text document with a unique closing delimiter and marker-keyed sections.

    Mutations run against an in-memory buffer; ``save`` writes back only when
    at least one mutation changed it, so a no-op run performs zero writes.
    """

    def __init__(
        self,
        text: str,
        *,
        path: str | Path | None = None,
        closing_delimiter: str = CLOSING_DELIMITER,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if closing_delimiter not in text:
            msg = f"document has no closing delimiter {closing_delimiter!r}"
            raise MutationError(msg)
        self.path = Path(path) if path is not None else None
        self.closing_delimiter = closing_delimiter
        self.env = os.environ if env is None else env
        self._text = text
        self._markers: dict[str, bool] = {}
        self._inserted: list[str] = []

    @classmethod
    def load(cls, path: str | Path, **kwargs: object) -> ConfigDocument:
        target = Path(path).expanduser()
        try:
            text = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"failed to read configuration {target}: {exc}"
            raise MutationError(msg) from exc
        return cls(text, path=target, **kwargs)  # type: ignore[arg-type]

    @property
    def text(self) -> str:
        return self._text

    @property
    def changed(self) -> bool:
        return bool(self._inserted)

    @property
    def inserted_markers(self) -> list[str]:
        return list(self._inserted)

    def has_marker(self, marker: str) -> bool:
        if marker not in self._markers:
            self._markers[marker] = marker in self._text
        return self._markers[marker]

    def ensure_section(
        self,
        marker: str,
        template: str,
        placeholders: Iterable[Placeholder] = (),
        *,
        container: str | None = None,
        container_close: str = "\n  ];",
        existing: Iterable[str] = (),
    ) -> bool:
        """Insert ``template`` unless ``marker`` or any ``existing`` text is present.

        Returns whether the buffer changed.
        """
        if self.has_marker(marker):
            LOGGER.debug("section_present", extra={"marker": marker})
            return False
        declared = next((text for text in existing if text in self._text), None)
        if declared is not None:
            LOGGER.info(
                "section_already_declared", extra={"marker": marker, "existing": declared}
            )
            return False

        rendered = template
        for placeholder in placeholders:
            if placeholder.token in rendered:
                rendered = rendered.replace(
                    placeholder.token, placeholder.resolve(self._text, self.env)
                )

        index = self._insertion_index(container, container_close)
        self._text = self._text[:index] + rendered + self._text[index:]
        self._markers[marker] = True
        self._inserted.append(marker)
        LOGGER.info("section_inserted", extra={"marker": marker, "container": container})
        return True

    def ensure(self, section: Section, placeholders: Iterable[Placeholder] = ()) -> bool:
        return self.ensure_section(
            section.marker,
            section.template,
            placeholders,
            container=section.container,
            container_close=section.container_close,
            existing=section.existing,
        )

    def _insertion_index(self, container: str | None, container_close: str) -> int:
        if container is None:
            return self._text.rindex(self.closing_delimiter)
        start = self._text.find(container)
        if start < 0:
            msg = f"container {container!r} not found in document"
            raise MutationError(msg)
        close = self._text.find(container_close, start + len(container))
        if close < 0:
            msg = f"container {container!r} is not closed by {container_close!r}"
            raise MutationError(msg)
        return close

    def save(self) -> bool:
        """Atomically rewrite the backing file if anything changed."""
        if not self.changed:
            return False
        if self.path is None:
            msg = "document has no backing file"
            raise MutationError(msg)
        try:
            mode = self.path.stat().st_mode & 0o777 if self.path.exists() else 0o644
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(self._text)
                os.chmod(tmp_name, mode)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            msg = f"failed to write configuration {self.path}: {exc}"
            raise MutationError(msg) from exc
        LOGGER.info(
            "document_saved",
            extra={"path": str(self.path), "inserted": list(self._inserted)},
        )
        self._inserted.clear()
        return True
