"""
File Extraction Pass
====================

Tracks the ``files`` array of a coding-stage response while it is still
streaming. A full parse of a large half-received array is unreliable, so this
pass locates the array, splits it into per-file object spans with a small
string-aware scanner, and pulls ``filename``/``content`` out of each span with
anchored searches. The last span may be unterminated; whatever content has
arrived is decoded.
"""

import copy
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from stageflow.agent.models import FileStatus, StreamingFile
from stageflow.utils.errors import ParseAnomaly
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


_FILES_ARRAY = re.compile(r'"files"\s*:\s*\[')
_STRING_FIELD = '"{name}"\\s*:\\s*"((?:[^"\\\\]+|\\\\.)*)"'
# Unterminated strings are accepted; a dangling backslash is left out
_OPEN_STRING_FIELD = '"{name}"\\s*:\\s*"((?:[^"\\\\]+|\\\\.)*)'
# Trailing \uXXXX escape still missing hex digits
_PARTIAL_UNICODE = re.compile(r'(\\+)u[0-9a-fA-F]{0,3}$')

_ESCAPE = re.compile(r'\\(u[0-9a-fA-F]{4}|.)', re.DOTALL)
_ESCAPES = {
    'b': '\b',
    'f': '\f',
    'n': '\n',
    't': '\t',
    'r': '\r',
    '"': '"',
    '\\': '\\',
    '/': '/',
}

STREAMING_PROGRESS_CAP = 95

LANGUAGE_BY_EXTENSION = {
    'tsx': 'typescript',
    'ts': 'typescript',
    'jsx': 'javascript',
    'js': 'javascript',
    'mjs': 'javascript',
    'py': 'python',
    'css': 'css',
    'scss': 'scss',
    'html': 'html',
    'json': 'json',
    'md': 'markdown',
    'yml': 'yaml',
    'yaml': 'yaml',
    'sh': 'shell',
    'sql': 'sql',
    'go': 'go',
    'rs': 'rust',
    'java': 'java',
    'vue': 'vue',
    'svg': 'xml',
    'txt': 'text',
}

CONFIG_FILENAMES = {
    'package.json', 'tsconfig.json', 'next.config.js', 'next.config.mjs',
    'tailwind.config.js', 'tailwind.config.ts', 'postcss.config.js',
    'vite.config.ts', 'vite.config.js', 'pyproject.toml', 'requirements.txt',
    'dockerfile', '.env', '.env.example', '.gitignore',
}
STYLE_EXTENSIONS = {'css', 'scss', 'sass', 'less'}
ASSET_EXTENSIONS = {'svg', 'png', 'jpg', 'jpeg', 'gif', 'ico', 'webp'}
COMPONENT_EXTENSIONS = {'tsx', 'jsx', 'vue'}
PAGE_BASENAMES = ('page.', 'layout.', 'index.')


def _extension(filename: str) -> str:
    _, ext = os.path.splitext(filename)
    return ext[1:].lower()


def infer_language(filename: str) -> str:
    """Language from the filename extension; ``text`` when unknown."""
    return LANGUAGE_BY_EXTENSION.get(_extension(filename), 'text')


def infer_category(filename: str) -> str:
    """Rough role of a file in a generated project."""
    path = filename.replace('\\', '/').lower()
    basename = path.rsplit('/', 1)[-1]
    ext = _extension(basename)

    if basename in CONFIG_FILENAMES or '.config.' in basename:
        return 'config'
    if ext in STYLE_EXTENSIONS:
        return 'style'
    if ext in ASSET_EXTENSIONS:
        return 'asset'
    if ext == 'html' or (('pages/' in path or 'app/' in path) and basename.startswith(PAGE_BASENAMES)):
        return 'page'
    if 'components/' in path or ext in COMPONENT_EXTENSIONS:
        return 'component'
    return 'file'


def _unescape(match: re.Match) -> str:
    token = match.group(1)
    if len(token) == 5:
        return chr(int(token[1:], 16))
    return _ESCAPES.get(token, match.group(0))


def decode_escapes(raw: str) -> str:
    """Reverse the producer's string escapes in one left-to-right pass."""
    text = _ESCAPE.sub(_unescape, raw)
    # Join surrogate pairs; a half pair cut off by the chunk boundary becomes U+FFFD
    return text.encode('utf-16', 'surrogatepass').decode('utf-16', 'replace')


def estimate_progress(content: str) -> int:
    return min(STREAMING_PROGRESS_CAP, 10 + len(content) // 50)


def _find_field(text: str, name: str, allow_open: bool = False) -> Optional[str]:
    pattern = _OPEN_STRING_FIELD if allow_open else _STRING_FIELD
    match = re.search(pattern.format(name=name), text, re.DOTALL)
    if match is None:
        return None
    raw = match.group(1)
    if allow_open and match.end() == len(text):
        partial = _PARTIAL_UNICODE.search(raw)
        if partial and len(partial.group(1)) % 2 == 1:
            raw = raw[:partial.start()] + partial.group(1)[:-1]
    return decode_escapes(raw)


@dataclass
class FileUpdate:
    """What changed in the tracked files during one chunk."""
    new_files: List[str] = field(default_factory=list)
    updated_files: List[str] = field(default_factory=list)
    is_complete: bool = False
    files: List[StreamingFile] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.new_files or self.updated_files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_files": list(self.new_files),
            "updated_files": list(self.updated_files),
            "is_complete": self.is_complete,
        }


class FileExtractor:
    """
    Incremental tracker for streamed file records, keyed by filename.

    Each file moves pending -> streaming -> completed | error and never back.
    A file is completed when its object closes in the stream or when the
    caller completes it explicitly; progress stays below 100 until then.
    """

    def __init__(self):
        self.anomalies: List[Dict[str, Any]] = []
        self._files: Dict[str, StreamingFile] = {}
        self._buffer = ""
        self._search_from = 0
        self._array_start: Optional[int] = None
        self._cursor = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._span_start: Optional[int] = None
        self._array_closed = False

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def feed(self, chunk: str) -> FileUpdate:
        """
        Consume one chunk of the raw model stream.

        Returns:
            FileUpdate listing new and updated filenames plus a snapshot
        """
        update = FileUpdate()
        self._buffer += chunk

        if self._array_start is None:
            match = _FILES_ARRAY.search(self._buffer, self._search_from)
            if match is None:
                # A key split across chunks is still found next time
                self._search_from = max(0, len(self._buffer) - 16)
                return self._finish_update(update)
            self._array_start = self._cursor = match.end()

        for start, end, closed in self._scan():
            try:
                self._absorb(self._buffer[start:end], closed, update)
            except ParseAnomaly as e:
                self._record_anomaly(e)

        return self._finish_update(update)

    def _scan(self) -> List[Tuple[int, int, bool]]:
        """Advance the span scanner; returns spans touched by new input."""
        touched: List[Tuple[int, int, bool]] = []
        buffer = self._buffer
        index = self._cursor
        while index < len(buffer) and not self._array_closed:
            ch = buffer[index]
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == '\\':
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch in '{[':
                if self._depth == 0 and ch == '{':
                    self._span_start = index
                self._depth += 1
            elif ch in '}]':
                if self._depth == 0:
                    # Closing bracket of the files array itself
                    self._array_closed = ch == ']'
                else:
                    self._depth -= 1
                    if self._depth == 0 and self._span_start is not None:
                        touched.append((self._span_start, index + 1, True))
                        self._span_start = None
            index += 1
        self._cursor = index

        if self._span_start is not None:
            touched.append((self._span_start, len(buffer), False))
        return touched

    def _absorb(self, text: str, closed: bool, update: FileUpdate) -> None:
        filename = _find_field(text, "filename")
        if not filename:
            return
        content = _find_field(text, "content", allow_open=True) or ""
        language = _find_field(text, "language")
        category = _find_field(text, "type")
        description = _find_field(text, "description")

        tracked = self._files.get(filename)
        if tracked is None:
            tracked = StreamingFile(
                filename=filename,
                language=language or infer_language(filename),
                type=category or infer_category(filename),
                description=description,
            )
            self._files[filename] = tracked
            self._transition(tracked, FileStatus.STREAMING)
            tracked.content = content
            tracked.progress = estimate_progress(content)
            update.new_files.append(filename)
            logger.debug("files.new", extra={"filename": filename, "language": tracked.language})
        elif tracked.status in (FileStatus.COMPLETED, FileStatus.ERROR):
            if content != tracked.content:
                raise ParseAnomaly(
                    f"content for {tracked.status.value} file '{filename}' changed; ignored"
                )
            return
        else:
            if language:
                tracked.language = language
            if category:
                tracked.type = category
            if description:
                tracked.description = description
            if content != tracked.content:
                tracked.content = content
                tracked.progress = max(tracked.progress, estimate_progress(content))
                update.updated_files.append(filename)

        if closed:
            self._complete(tracked)
            if filename not in update.new_files and filename not in update.updated_files:
                update.updated_files.append(filename)

    def _finish_update(self, update: FileUpdate) -> FileUpdate:
        update.is_complete = self._array_closed
        update.files = self.files
        return update

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, tracked: StreamingFile, target: FileStatus) -> None:
        if not tracked.can_transition(target):
            raise ParseAnomaly(
                f"file '{tracked.filename}' cannot move from {tracked.status.value} to {target.value}"
            )
        tracked.status = target

    def _complete(self, tracked: StreamingFile) -> None:
        self._transition(tracked, FileStatus.COMPLETED)
        tracked.progress = 100

    def mark_complete(self, filename: str) -> bool:
        """
        Explicitly complete one file.

        Returns:
            True if the file was open and is now completed
        """
        tracked = self._files.get(filename)
        if tracked is None or tracked.status == FileStatus.COMPLETED:
            return False
        try:
            self._complete(tracked)
        except ParseAnomaly as e:
            self._record_anomaly(e)
            return False
        return True

    def complete_all(self) -> List[str]:
        """Complete every file still pending or streaming (end of stream)."""
        return [name for name in list(self._files) if self.mark_complete(name)]

    def fail_streaming(self) -> List[str]:
        """Move every streaming file to error (stream abandoned)."""
        failed = []
        for tracked in self._files.values():
            if tracked.status == FileStatus.STREAMING:
                tracked.status = FileStatus.ERROR
                failed.append(tracked.filename)
        if failed:
            logger.info("files.failed_streaming", extra={"filenames": failed})
        return failed

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        return self._array_closed

    @property
    def files(self) -> List[StreamingFile]:
        """Copies of the tracked files in discovery order."""
        return [copy.copy(tracked) for tracked in self._files.values()]

    def get(self, filename: str) -> Optional[StreamingFile]:
        tracked = self._files.get(filename)
        return copy.copy(tracked) if tracked else None

    def _record_anomaly(self, anomaly: ParseAnomaly) -> None:
        logger.warning("files.anomaly", extra={"detail": str(anomaly)})
        self.anomalies.append(anomaly.to_dict())
