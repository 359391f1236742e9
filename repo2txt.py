#!/usr/bin/env python3
"""
repo2txt - Select files from a repository listing and pack them into one prompt-ready text.

Usage:
    repo2txt https://github.com/owner/repo --ext md -p
    repo2txt ./project --only src/ --stats
    repo2txt archive.zip --interactive --zip partial_repo.zip
"""
from __future__ import annotations

import argparse
import functools
import json
import os
import posixpath
import re
import shlex
import subprocess
import sys
import threading
import zipfile
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import httpx
import pathspec
from platformdirs import user_config_dir

DEFAULT_TOKEN_ENCODING = "cl100k_base"
DEFAULT_SELECTED_EXTENSIONS = ("js", "py", "java", "cpp", "html", "css", "ts", "jsx", "tsx")
DEFAULT_IGNORE_PATTERNS = (".git/",)
DEFAULT_FETCH_WORKERS = 8
DEFAULT_OUTPUT_NAME = "prompt.txt"
DEFAULT_ZIP_NAME = "partial_repo.zip"
GITHUB_API_URL = "https://api.github.com"

FILE_KIND = "blob"
ROOT_LABEL = "./"

SELECTED = "selected"
UNSELECTED = "unselected"
PARTIAL = "partial"
SETTABLE_STATES = (SELECTED, UNSELECTED)
STATE_MARKERS = {SELECTED: "[x]", UNSELECTED: "[ ]", PARTIAL: "[-]"}

APP_NAME = "repo2txt"
SETTINGS_FILENAME = "settings.json"
SETTINGS_PATH = Path(user_config_dir(APP_NAME, appauthor=False)) / SETTINGS_FILENAME

REPO_URL_RE = re.compile(r"^https://github\.com/([^/]+)/([^/]+)(/tree/(.+))?$")


class Repo2TxtError(Exception):
    """Base class for failures surfaced to the user."""


class EmptySelectionError(Repo2TxtError):
    def __init__(self, message: str = "No files selected.") -> None:
        super().__init__(message)


class ContentFetchError(Repo2TxtError):
    def __init__(self, failures: list[tuple[str, str]], total: int) -> None:
        self.failures = failures
        self.total = total
        details = "; ".join(f"{path}: {reason}" for path, reason in failures)
        super().__init__(f"failed to fetch {len(failures)} of {total} file(s): {details}")


class ListingError(Repo2TxtError):
    pass


class StaleTreeError(Repo2TxtError):
    def __init__(self) -> None:
        super().__init__("The listing was reloaded while files were being fetched; selection discarded.")


@dataclass(frozen=True)
class Entry:
    path: str
    kind: str = FILE_KIND
    size: int = 0
    locator: Any = None


@dataclass(frozen=True)
class SelectedFile:
    """Export record handed to content fetchers and the archive writer."""

    path: str
    locator: Any
    size: int


@dataclass(frozen=True)
class FileContent:
    path: str
    text: str


@dataclass(eq=False)
class FileNode:
    name: str
    path: str
    size: int
    locator: Any
    extension: str
    parent: DirectoryNode | None = field(default=None, repr=False)
    selection: str = UNSELECTED

    @property
    def aggregate_size(self) -> int:
        return self.size


@dataclass(eq=False)
class DirectoryNode:
    name: str
    path: str
    parent: DirectoryNode | None = field(default=None, repr=False)
    children: dict[str, TreeNode] = field(default_factory=dict, repr=False)
    selection: str = UNSELECTED
    _aggregate_size: int | None = field(default=None, repr=False)

    @property
    def aggregate_size(self) -> int:
        if self._aggregate_size is None:
            self._aggregate_size = sum(child.aggregate_size for child in self.children.values())
        return self._aggregate_size


TreeNode = Union[FileNode, DirectoryNode]


@dataclass(frozen=True)
class RenderedDocument:
    text: str
    file_count: int
    token_count: int | None
    token_source: str | None


def display_name(name: str) -> str:
    return ROOT_LABEL if name == "" else name


def file_extension(name: str) -> str:
    """Lower-cased text after the last dot, or "" when the name has no dot."""
    _, dot, ext = name.rpartition(".")
    return ext.lower() if dot else ""


def normalize_extension(extension: str) -> str:
    return extension.strip().lstrip(".").lower()


def derive_selection(states: Iterable[str]) -> str:
    """
    Collapse child states into one tri-state.

    No states at all counts as unselected; a single partial child makes the result partial.
    """
    seen = set(states)
    if not seen or seen == {UNSELECTED}:
        return UNSELECTED
    if seen == {SELECTED}:
        return SELECTED
    return PARTIAL


def node_sort_key(item: tuple[str, TreeNode]) -> tuple[int, int, str]:
    name, node = item
    return (-node.aggregate_size, 0 if isinstance(node, DirectoryNode) else 1, name)


def sorted_children(directory: DirectoryNode) -> list[tuple[str, TreeNode]]:
    """Presentation order: aggregate size descending, directories first, then name."""
    return sorted(directory.children.items(), key=node_sort_key)


def compare_paths(a: str, b: str) -> int:
    """
    Order flat file paths so that, under a shared prefix, entries that go deeper come
    before the file that ends at that depth.
    """
    a_parts = a.split("/")
    b_parts = b.split("/")
    for idx in range(min(len(a_parts), len(b_parts))):
        if a_parts[idx] != b_parts[idx]:
            if idx == len(a_parts) - 1 and idx < len(b_parts) - 1:
                return 1
            if idx == len(b_parts) - 1 and idx < len(a_parts) - 1:
                return -1
            return -1 if a_parts[idx] < b_parts[idx] else 1
    return len(a_parts) - len(b_parts)


def sort_paths(paths: Iterable[str]) -> list[str]:
    return sorted(paths, key=functools.cmp_to_key(compare_paths))


def coerce_size(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return max(0, value)


class FileTree:
    """
    Immutable directory tree over a listing, with mutable tri-state selection.

    Files own their selection. Directory and extension-group states are derived and
    re-derived after every mutation.
    """

    def __init__(self, root: DirectoryNode) -> None:
        self.root = root
        self.extension_index: dict[str, list[FileNode]] = {}
        self.skipped_entries = 0
        self._extension_states: dict[str, str] = {}
        self._files_by_path: dict[str, FileNode] = {}

    # Queries

    def files(self) -> list[FileNode]:
        return list(self._files_by_path.values())

    def find(self, path: str) -> TreeNode | None:
        path = path.strip().lstrip("/")
        if path in ("", ".", ROOT_LABEL):
            return self.root
        node = self._files_by_path.get(path)
        if node is not None:
            return node
        current: TreeNode = self.root
        for part in path.rstrip("/").split("/"):
            if not isinstance(current, DirectoryNode):
                return None
            child = current.children.get(part)
            if child is None and part in (".", ROOT_LABEL):
                child = current.children.get("")
            if child is None:
                return None
            current = child
        return current

    def extension_members(self, extension: str) -> list[FileNode]:
        return list(self.extension_index.get(normalize_extension(extension), []))

    def extension_selection(self, extension: str) -> str:
        extension = normalize_extension(extension)
        if extension not in self.extension_index:
            raise KeyError(extension)
        return self._extension_states[extension]

    def extension_states(self) -> dict[str, str]:
        return dict(self._extension_states)

    def extensions(self) -> list[str]:
        return sorted(self.extension_index, key=lambda ext: (-len(self.extension_index[ext]), ext))

    def selected_files(self) -> list[SelectedFile]:
        return [
            SelectedFile(path=node.path, locator=node.locator, size=node.size)
            for node in self._files_by_path.values()
            if node.selection == SELECTED
        ]

    def export_extension_states(self) -> dict[str, bool]:
        """Boolean per extension; partial groups are left out."""
        return {
            ext: state == SELECTED
            for ext, state in sorted(self._extension_states.items())
            if state != PARTIAL
        }

    # Mutations

    def set_file_selection(self, node: FileNode, value: str) -> None:
        if not isinstance(node, FileNode):
            raise TypeError(f"expected a file node, got {type(node).__name__}")
        _check_settable(value)
        node.selection = value
        self.recompute_ancestors(node)
        if __debug__:
            self.assert_consistent()

    def set_directory_selection(self, node: DirectoryNode, value: str) -> None:
        if not isinstance(node, DirectoryNode):
            raise TypeError(f"expected a directory node, got {type(node).__name__}")
        _check_settable(value)
        for leaf in iter_files(node):
            leaf.selection = value
        refresh_directory_states(node)
        self.recompute_ancestors(node)
        if __debug__:
            self.assert_consistent()

    def set_extension_selection(self, extension: str, value: str) -> None:
        _check_settable(value)
        extension = normalize_extension(extension)
        members = self.extension_index.get(extension)
        if members is None:
            raise KeyError(extension)
        for leaf in members:
            leaf.selection = value
        refresh_directory_states(self.root)
        self._extension_states[extension] = derive_selection(leaf.selection for leaf in members)
        if __debug__:
            self.assert_consistent()

    def recompute_ancestors(self, node: TreeNode) -> None:
        """Re-derive every ancestor directory of `node` and each extension group it touches."""
        parent = node.parent
        while parent is not None:
            parent.selection = derive_selection(child.selection for child in parent.children.values())
            parent = parent.parent

        if isinstance(node, FileNode):
            touched = {node.extension}
        else:
            touched = {leaf.extension for leaf in iter_files(node)}
        for extension in touched:
            members = self.extension_index[extension]
            self._extension_states[extension] = derive_selection(leaf.selection for leaf in members)

    def select_only(self, paths: Iterable[str]) -> list[str]:
        """Select exactly the given paths (directories cascade). Returns paths that were not found."""
        missing = []
        self.set_directory_selection(self.root, UNSELECTED)
        for path in paths:
            node = self.find(path)
            if node is None:
                missing.append(path)
            elif isinstance(node, DirectoryNode):
                self.set_directory_selection(node, SELECTED)
            else:
                self.set_file_selection(node, SELECTED)
        return missing

    def set_path_selection(self, path: str, value: str) -> bool:
        node = self.find(path)
        if node is None:
            return False
        if isinstance(node, DirectoryNode):
            self.set_directory_selection(node, value)
        else:
            self.set_file_selection(node, value)
        return True

    def assert_consistent(self) -> None:
        for directory in iter_directories(self.root):
            expected = derive_selection(child.selection for child in directory.children.values())
            assert directory.selection == expected, (
                f"directory {directory.path or ROOT_LABEL!r} is {directory.selection}, expected {expected}"
            )
        for extension, members in self.extension_index.items():
            expected = derive_selection(leaf.selection for leaf in members)
            assert self._extension_states.get(extension) == expected, (
                f"extension {extension!r} is {self._extension_states.get(extension)}, expected {expected}"
            )
        for leaf in self._files_by_path.values():
            assert leaf.selection in SETTABLE_STATES, f"file {leaf.path!r} is {leaf.selection}"


def _check_settable(value: str) -> None:
    if value not in SETTABLE_STATES:
        raise ValueError(f"selection must be one of {SETTABLE_STATES}, got {value!r}")


def iter_files(node: TreeNode) -> Iterable[FileNode]:
    if isinstance(node, FileNode):
        yield node
        return
    for child in node.children.values():
        yield from iter_files(child)


def iter_directories(node: DirectoryNode) -> Iterable[DirectoryNode]:
    yield node
    for child in node.children.values():
        if isinstance(child, DirectoryNode):
            yield from iter_directories(child)


def refresh_directory_states(node: DirectoryNode) -> str:
    """Post-order re-derivation of `node` and every directory below it."""
    states = []
    for child in node.children.values():
        if isinstance(child, DirectoryNode):
            states.append(refresh_directory_states(child))
        else:
            states.append(child.selection)
    node.selection = derive_selection(states)
    return node.selection


def compute_sizes(node: TreeNode) -> int:
    if isinstance(node, FileNode):
        return node.size
    total = 0
    for child in node.children.values():
        total += compute_sizes(child)
    node._aggregate_size = total
    return total


def split_entry_path(path: str) -> list[str] | None:
    """Segments of a root-relative path, or None when the entry is malformed."""
    normalized = path.lstrip("/")
    if not normalized:
        return None
    parts = normalized.split("/")
    if parts[-1] == "":
        return None
    return parts


def build_tree(
    entries: Iterable[Entry],
    initial_extension_states: Mapping[str, bool] | None = None,
    default_extensions: Iterable[str] = DEFAULT_SELECTED_EXTENSIONS,
) -> FileTree:
    """
    Build the selection tree for a listing.

    Non-file entries are dropped, the first entry for a duplicated path wins, and
    malformed entries are skipped and counted in `skipped_entries`.
    """
    saved_states = {normalize_extension(ext): bool(value) for ext, value in (initial_extension_states or {}).items()}
    defaults = {normalize_extension(ext) for ext in default_extensions}

    root = DirectoryNode(name="", path="")
    tree = FileTree(root)

    for entry in entries:
        if entry.kind != FILE_KIND:
            continue
        parts = split_entry_path(entry.path)
        if parts is None:
            tree.skipped_entries += 1
            continue

        directory = root
        blocked = False
        for part in parts[:-1]:
            child = directory.children.get(part)
            if child is None:
                prefix = f"{directory.path}/{part}" if directory.path else part
                child = DirectoryNode(name=part, path=prefix, parent=directory)
                directory.children[part] = child
            elif isinstance(child, FileNode):
                blocked = True
                break
            directory = child
        if blocked:
            tree.skipped_entries += 1
            continue

        leaf_name = parts[-1]
        existing = directory.children.get(leaf_name)
        if isinstance(existing, DirectoryNode):
            tree.skipped_entries += 1
            continue
        if existing is not None:
            continue

        extension = file_extension(leaf_name)
        leaf = FileNode(
            name=leaf_name,
            path="/".join(parts),
            size=coerce_size(entry.size),
            locator=entry.locator,
            extension=extension,
            parent=directory,
            selection=SELECTED if saved_states.get(extension, extension in defaults) else UNSELECTED,
        )
        directory.children[leaf_name] = leaf
        tree._files_by_path[leaf.path] = leaf
        tree.extension_index.setdefault(extension, []).append(leaf)

    compute_sizes(root)
    refresh_directory_states(root)
    for extension, members in tree.extension_index.items():
        tree._extension_states[extension] = derive_selection(leaf.selection for leaf in members)
    return tree


def entries_from_listing(items: Iterable[Mapping[str, Any]]) -> list[Entry]:
    """Convert raw listing records (`path`, `type`, optional `size`, `url`) into entries."""
    entries = []
    for item in items:
        entries.append(
            Entry(
                path=str(item.get("path") or ""),
                kind=str(item.get("type", item.get("kind", ""))),
                size=coerce_size(item.get("size")),
                locator=item.get("url", item.get("locator")),
            )
        )
    return entries


_TOKENIZER_STATE = "unknown"  # unknown | ready | disabled
_TOKENIZER_MOD: Any | None = None
_TOKENIZER_CACHE: dict[str, Any] = {}


def get_tokenizer_encoder(encoding: str) -> Any | None:
    global _TOKENIZER_STATE
    global _TOKENIZER_MOD

    if _TOKENIZER_STATE == "disabled":
        return None

    if _TOKENIZER_MOD is None:
        try:
            import tiktoken  # type: ignore
        except BaseException:
            _TOKENIZER_STATE = "disabled"
            return None
        _TOKENIZER_MOD = tiktoken

    cached = _TOKENIZER_CACHE.get(encoding)
    if cached is not None:
        return cached

    try:
        enc = _TOKENIZER_MOD.get_encoding(encoding)
    except BaseException:
        _TOKENIZER_STATE = "disabled"
        _TOKENIZER_CACHE.clear()
        return None
    _TOKENIZER_CACHE[encoding] = enc
    _TOKENIZER_STATE = "ready"
    return enc


def count_tokens(text: str, encoding: str = DEFAULT_TOKEN_ENCODING) -> int | None:
    """
    Return the token count, or None when the tokenizer cannot be used.

    Any tokenizer failure disables it for the rest of the process.
    """
    enc = get_tokenizer_encoder(encoding)
    if enc is None:
        return None

    try:
        return len(enc.encode(text))
    except BaseException:
        global _TOKENIZER_STATE
        _TOKENIZER_STATE = "disabled"
        _TOKENIZER_CACHE.clear()
        return None


def build_index_tree(contents: list[FileContent]) -> dict[str, Any]:
    """Nested name -> subtree mapping; a leaf holds its file text, a directory a dict."""
    tree: dict[str, Any] = {}
    for item in contents:
        parts = item.path.split("/")
        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if child is not None:
                    break
                child = {}
                node[part] = child
            node = child
        else:
            node.setdefault(parts[-1], item.text)
    return tree


def build_index_lines(node: dict[str, Any], prefix: str = "") -> list[str]:
    lines = []
    items = list(node.items())
    for idx, (name, child) in enumerate(items):
        last = idx == len(items) - 1
        connector = "└── " if last else "├── "
        lines.append(f"{prefix}{connector}{display_name(name)}")
        if isinstance(child, dict):
            extension = "    " if last else "│   "
            lines.extend(build_index_lines(child, prefix + extension))
    return lines


def format_repo_contents(contents: list[FileContent]) -> str:
    """Render the directory index followed by one block per file, byte-for-byte stable."""
    by_path: dict[str, FileContent] = {}
    for item in contents:
        path = item.path.lstrip("/")
        by_path.setdefault(path, FileContent(path=path, text=item.text))
    ordered = [by_path[path] for path in sort_paths(by_path)]

    sections = ["Directory Structure:\n\n"]
    sections.extend(f"{line}\n" for line in build_index_lines(build_index_tree(ordered)))
    for item in ordered:
        sections.append(f"\n---\nFile: {item.path}\n---\n\n{item.text}\n")
    return "".join(sections)


def render_document(contents: list[FileContent], token_encoding: str = DEFAULT_TOKEN_ENCODING) -> RenderedDocument:
    if not contents:
        raise EmptySelectionError()
    text = format_repo_contents(contents)
    tokens = count_tokens(text, encoding=token_encoding)
    return RenderedDocument(
        text=text,
        file_count=len({item.path.lstrip("/") for item in contents}),
        token_count=tokens,
        token_source=token_encoding if tokens is not None else None,
    )


def fetch_contents(
    files: list[SelectedFile],
    read_text: Callable[[SelectedFile], str],
    max_workers: int = DEFAULT_FETCH_WORKERS,
) -> list[FileContent]:
    """Fetch every file concurrently; all of them succeed or ContentFetchError lists the failures."""
    if not files:
        raise EmptySelectionError()

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(files)))) as pool:
        futures = [pool.submit(read_text, item) for item in files]

    contents = []
    failures = []
    for item, future in zip(files, futures):
        exc = future.exception()
        if exc is not None:
            failures.append((item.path, str(exc) or type(exc).__name__))
            continue
        contents.append(FileContent(path=item.path, text=future.result()))

    if failures:
        raise ContentFetchError(failures, total=len(files))
    return contents


class SelectionSession:
    """
    Holds the tree for the current listing.

    Loading a new listing bumps the generation; a render that started against an
    older tree is discarded instead of returned.
    """

    def __init__(
        self,
        initial_extension_states: Mapping[str, bool] | None = None,
        default_extensions: Iterable[str] = DEFAULT_SELECTED_EXTENSIONS,
    ) -> None:
        self.initial_extension_states = dict(initial_extension_states or {})
        self.default_extensions = tuple(default_extensions)
        self.generation = 0
        self.tree = build_tree([])

    def load(self, entries: Iterable[Entry]) -> FileTree:
        tree = build_tree(
            entries,
            initial_extension_states=self.initial_extension_states,
            default_extensions=self.default_extensions,
        )
        self.generation += 1
        self.tree = tree
        return tree

    def render(
        self,
        read_text: Callable[[SelectedFile], str],
        token_encoding: str = DEFAULT_TOKEN_ENCODING,
        max_workers: int = DEFAULT_FETCH_WORKERS,
    ) -> tuple[RenderedDocument, list[FileContent]]:
        generation = self.generation
        contents = fetch_contents(self.tree.selected_files(), read_text, max_workers=max_workers)
        if generation != self.generation:
            raise StaleTreeError()
        return render_document(contents, token_encoding=token_encoding), contents


def decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def build_ignore_spec(patterns: Iterable[str]) -> pathspec.PathSpec:
    return pathspec.PathSpec.from_lines("gitwildmatch", list(patterns))


def scoped_gitignore_patterns(gitignore_dir: str, text: str) -> list[str]:
    """Gitignore lines rewritten relative to the listing root."""
    patterns = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if not gitignore_dir:
            patterns.append(line)
            continue
        negated = line.startswith("!")
        body = line[1:] if negated else line
        anchored = body.startswith("/") or "/" in body.rstrip("/")
        body = body.lstrip("/")
        scoped = f"{gitignore_dir}/{body}" if anchored else f"{gitignore_dir}/**/{body}"
        patterns.append(f"!{scoped}" if negated else scoped)
    return patterns


def filter_ignored(entries: list[Entry], patterns: list[str]) -> list[Entry]:
    spec = build_ignore_spec(patterns)
    return [entry for entry in entries if not spec.match_file(entry.path)]


class LocalDirectorySource:
    def __init__(self, root: Path, ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS) -> None:
        self.root = Path(root).expanduser().resolve()
        self.ignore_patterns = list(ignore_patterns)

    def list_entries(self) -> list[Entry]:
        if not self.root.is_dir():
            raise ListingError(f"Not a directory: {self.root}")

        entries = []
        patterns = list(self.ignore_patterns)
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [name for name in dirnames if name != ".git"]
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            for filename in filenames:
                path = Path(dirpath) / filename
                if not path.is_file():
                    continue
                rel = f"{rel_dir}/{filename}" if rel_dir else filename
                if filename == ".gitignore":
                    try:
                        patterns.extend(scoped_gitignore_patterns(rel_dir, path.read_text(encoding="utf-8")))
                    except (OSError, UnicodeDecodeError) as exc:
                        print(f"Warning: could not read {rel}: {exc}", file=sys.stderr)
                entries.append(Entry(path=rel, kind=FILE_KIND, size=path.stat().st_size, locator=str(path)))

        return filter_ignored(entries, patterns)

    def read_text(self, item: SelectedFile) -> str:
        return decode_text(Path(item.locator).read_bytes())

    def close(self) -> None:
        pass


class ZipArchiveSource:
    def __init__(self, path: Path, ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS) -> None:
        self.path = Path(path).expanduser().resolve()
        self.ignore_patterns = list(ignore_patterns)
        self._lock = threading.Lock()
        try:
            self._archive = zipfile.ZipFile(self.path)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ListingError(f"Could not open archive {self.path}: {exc}") from exc

    def list_entries(self) -> list[Entry]:
        entries = []
        patterns = list(self.ignore_patterns)
        for info in self._archive.infolist():
            if info.is_dir():
                continue
            rel = info.filename.lstrip("/")
            if posixpath.basename(rel) == ".gitignore":
                text = decode_text(self._archive.read(info))
                patterns.extend(scoped_gitignore_patterns(posixpath.dirname(rel), text))
            entries.append(Entry(path=rel, kind=FILE_KIND, size=info.file_size, locator=info.filename))
        return filter_ignored(entries, patterns)

    def read_text(self, item: SelectedFile) -> str:
        with self._lock:
            return decode_text(self._archive.read(item.locator))

    def close(self) -> None:
        self._archive.close()


def parse_repo_url(url: str) -> tuple[str, str, str]:
    """Return (owner, repo, ref_and_path) for a GitHub repository or tree URL."""
    match = REPO_URL_RE.match(url.strip().rstrip("/"))
    if not match:
        raise ListingError(
            "Invalid GitHub repository URL. Please ensure the URL is in the correct format: "
            "https://github.com/owner/repo or https://github.com/owner/repo/tree/branch/path"
        )
    return match.group(1), match.group(2), match.group(4) or ""


def split_ref_and_path(ref_and_path: str, refs: Iterable[str]) -> tuple[str, str]:
    """Pick the longest known ref that `ref_and_path` starts with; the rest is the sub-path."""
    matches = [
        ref
        for ref in refs
        if ref and (ref_and_path == ref or ref_and_path.startswith(ref + "/"))
    ]
    if not matches:
        return ref_and_path, ""
    ref = max(matches, key=len)
    return ref, ref_and_path[len(ref) + 1 :]


class GitHubClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = GITHUB_API_URL,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"token {token}"
        self._http = httpx.Client(
            base_url=base_url,
            headers=headers,
            transport=transport,
            timeout=timeout,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._http.close()

    def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise ListingError(f"Failed to reach GitHub: {exc}") from exc
        if response.is_error:
            raise_for_github_status(response)
        return response

    def get_references(self, owner: str, repo: str) -> list[str]:
        refs = []
        for kind in ("heads", "tags"):
            response = self._get(f"/repos/{owner}/{repo}/git/matching-refs/{kind}/")
            refs.extend("/".join(item["ref"].split("/")[2:]) for item in response.json())
        return refs

    def fetch_repo_sha(self, owner: str, repo: str, ref: str, path: str) -> str:
        params = {"ref": ref} if ref else None
        response = self._get(
            f"/repos/{owner}/{repo}/contents/{path}",
            params=params,
            headers={"Accept": "application/vnd.github.object+json"},
        )
        return response.json()["sha"]

    def fetch_repo_tree(self, owner: str, repo: str, sha: str) -> list[dict[str, Any]]:
        response = self._get(f"/repos/{owner}/{repo}/git/trees/{sha}", params={"recursive": "1"})
        return response.json()["tree"]

    def fetch_text(self, url: str) -> str:
        response = self._get(url, headers={"Accept": "application/vnd.github.v3.raw"})
        return decode_text(response.content)


def raise_for_github_status(response: httpx.Response) -> None:
    if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
        raise ListingError(
            "GitHub API rate limit exceeded. Please try again later or provide a valid "
            "access token to increase your rate limit."
        )
    if response.status_code == 404:
        raise ListingError(
            "Repository, branch, or path not found. Please check that the URL, "
            "branch/tag, and path are correct and accessible."
        )
    raise ListingError(f"Failed to fetch repository data. Status: {response.status_code}.")


class GitHubSource:
    def __init__(self, url: str, token: str | None = None, client: GitHubClient | None = None) -> None:
        self.owner, self.repo, self.ref_and_path = parse_repo_url(url)
        self.client = client or GitHubClient(token)
        self.ref = ""
        self.subpath = ""

    def list_entries(self) -> list[Entry]:
        if self.ref_and_path:
            refs = self.client.get_references(self.owner, self.repo)
            self.ref, self.subpath = split_ref_and_path(self.ref_and_path, refs)
        sha = self.client.fetch_repo_sha(self.owner, self.repo, self.ref, self.subpath)
        return entries_from_listing(self.client.fetch_repo_tree(self.owner, self.repo, sha))

    def read_text(self, item: SelectedFile) -> str:
        return self.client.fetch_text(item.locator)

    def close(self) -> None:
        self.client.close()


ListingSource = Union[LocalDirectorySource, ZipArchiveSource, GitHubSource]


def open_source(source: str, token: str | None = None) -> ListingSource:
    if source.startswith(("https://", "http://")):
        return GitHubSource(source, token=token)
    path = Path(source).expanduser()
    if path.is_dir():
        return LocalDirectorySource(path)
    if path.is_file() and zipfile.is_zipfile(path):
        return ZipArchiveSource(path)
    raise ListingError(f"Not a GitHub URL, directory, or zip archive: {source}")


def load_settings() -> dict[str, Any]:
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def save_settings(partial: Mapping[str, Any]) -> None:
    current = load_settings()
    current.update(partial)
    try:
        SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
        SETTINGS_PATH.write_text(json.dumps(current, indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        print(f"Warning: could not save settings to {SETTINGS_PATH}: {exc}", file=sys.stderr)


def saved_extension_states(settings: Mapping[str, Any]) -> dict[str, bool]:
    states = settings.get("extensionStates")
    if not isinstance(states, dict):
        return {}
    return {str(ext): bool(value) for ext, value in states.items()}


def format_bytes(n: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    idx = 0
    value = float(n or 0)
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    if idx == 0:
        return f"{int(value)} {units[idx]}"
    return f"{value:.1f} {units[idx]}"


def scale_percent(value: int, maximum: int) -> int:
    if not maximum or maximum <= 0:
        return 0
    pct = value / maximum * 100
    if 0 < pct < 2:
        return 2
    return max(0, min(100, round(pct)))


def size_bar(percent: int, width: int = 10) -> str:
    filled = round(percent * width / 100)
    return "█" * filled + "░" * (width - filled)


def render_tree_listing(tree: FileTree, size_bars: bool = True) -> list[str]:
    root = tree.root
    lines = [f"{STATE_MARKERS[root.selection]} {ROOT_LABEL} ({format_bytes(root.aggregate_size)})"]

    def render(node: DirectoryNode, prefix: str) -> None:
        items = sorted_children(node)
        sibling_max = max((child.aggregate_size for _, child in items), default=0)
        for idx, (name, child) in enumerate(items):
            last = idx == len(items) - 1
            connector = "└── " if last else "├── "
            label = display_name(name)
            if isinstance(child, DirectoryNode) and label != ROOT_LABEL:
                label += "/"
            line = f"{prefix}{connector}{STATE_MARKERS[child.selection]} {label} ({format_bytes(child.aggregate_size)})"
            if size_bars:
                line += " " + size_bar(scale_percent(child.aggregate_size, sibling_max))
            lines.append(line)
            if isinstance(child, DirectoryNode):
                render(child, prefix + ("    " if last else "│   "))

    render(root, "")
    return lines


def render_extension_listing(tree: FileTree) -> list[str]:
    lines = []
    for ext in tree.extensions():
        label = f".{ext}" if ext else "(no extension)"
        count = len(tree.extension_index[ext])
        lines.append(f"{STATE_MARKERS[tree.extension_selection(ext)]} {label} ({count} file(s))")
    return lines


def print_selection_summary(tree: FileTree) -> None:
    selected = tree.selected_files()
    total = sum(item.size for item in selected)
    print(f"Selected: {len(selected)} of {len(tree.files())} file(s), {format_bytes(total)}")


def run_interactive_refinement(tree: FileTree, size_bars: bool = True) -> None:
    print("Interactive mode commands: show | exts | select <path> | deselect <path> | ext <ext> on|off | all on|off | finalize")

    while True:
        print_selection_summary(tree)

        try:
            raw = input("repo2txt> ").strip()
        except EOFError:
            print()
            break

        if not raw:
            continue

        try:
            parts = shlex.split(raw)
        except ValueError as exc:
            print(f"Invalid command syntax: {exc}")
            continue

        command = parts[0].lower()

        if command == "finalize":
            break

        if command == "show":
            print("\n".join(render_tree_listing(tree, size_bars=size_bars)))
            continue

        if command == "exts":
            print("\n".join(render_extension_listing(tree)) or "No files.")
            continue

        if command in {"select", "deselect"}:
            if len(parts) != 2:
                print(f"Usage: {command} <path>")
                continue
            value = SELECTED if command == "select" else UNSELECTED
            if not tree.set_path_selection(parts[1], value):
                print(f"Path not found: {parts[1]}")
            continue

        if command == "ext":
            if len(parts) != 3 or parts[2].lower() not in {"on", "off"}:
                print("Usage: ext <ext> on|off")
                continue
            value = SELECTED if parts[2].lower() == "on" else UNSELECTED
            try:
                tree.set_extension_selection(parts[1], value)
            except KeyError:
                print(f"No files with extension: {parts[1]}")
            continue

        if command == "all":
            if len(parts) != 2 or parts[1].lower() not in {"on", "off"}:
                print("Usage: all on|off")
                continue
            tree.set_directory_selection(tree.root, SELECTED if parts[1].lower() == "on" else UNSELECTED)
            continue

        print("Unknown command. Use: show, exts, select, deselect, ext, all, finalize")


def apply_cli_toggles(tree: FileTree, args: argparse.Namespace) -> list[str]:
    """Apply extension and path flags in a fixed order. Returns error messages."""
    errors = []
    for ext in args.ext:
        try:
            tree.set_extension_selection(ext, SELECTED)
        except KeyError:
            errors.append(f"No files with extension: {ext}")
    for ext in args.no_ext:
        try:
            tree.set_extension_selection(ext, UNSELECTED)
        except KeyError:
            errors.append(f"No files with extension: {ext}")
    if args.only:
        errors.extend(f"Path not found: {path}" for path in tree.select_only(args.only))
    for path in args.select:
        if not tree.set_path_selection(path, SELECTED):
            errors.append(f"Path not found: {path}")
    for path in args.deselect:
        if not tree.set_path_selection(path, UNSELECTED):
            errors.append(f"Path not found: {path}")
    return errors


def format_default_copy_details(document: RenderedDocument) -> str:
    char_count = len(document.text)
    if document.token_count is None:
        return f"{char_count:,} chars"
    return f"{char_count:,} chars, {document.token_count:,} tokens ({document.token_source})"


def format_stats_details(document: RenderedDocument) -> str:
    byte_count = len(document.text.encode("utf-8"))
    details = f"{len(document.text):,} chars, {byte_count:,} bytes"
    if document.token_count is not None:
        details += f", approximate token count: {document.token_count:,} ({document.token_source})"
    return details


def write_zip_archive(contents: list[FileContent], out_path: Path) -> Path:
    out_path = Path(out_path).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for item in contents:
            archive.writestr(item.path.lstrip("/"), item.text)
    return out_path


def write_output(text: str, out_path: Path) -> Path:
    out_path = Path(out_path).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(text, encoding="utf-8")
    return out_path


def copy_to_clipboard(text: str) -> bool:
    """Copy text to clipboard. Returns True on success."""
    try:
        # macOS
        proc = subprocess.Popen(
            ["pbcopy"], stdin=subprocess.PIPE, env={"LANG": "en_US.UTF-8"}
        )
        proc.communicate(text.encode("utf-8"))
        return proc.returncode == 0
    except FileNotFoundError:
        pass

    try:
        # Linux with xclip
        proc = subprocess.Popen(
            ["xclip", "-selection", "clipboard"], stdin=subprocess.PIPE
        )
        proc.communicate(text.encode("utf-8"))
        return proc.returncode == 0
    except FileNotFoundError:
        pass

    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Select files from a repository, directory, or zip archive and pack them into one text.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  repo2txt https://github.com/owner/repo -p
  repo2txt https://github.com/owner/repo/tree/main/src --ext md --stats
  repo2txt ./project --only src/ --deselect src/generated -o prompt.txt
  repo2txt archive.zip --interactive --zip partial_repo.zip
        """,
    )
    parser.add_argument(
        "source",
        help="GitHub repository URL, local directory, or .zip archive",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("GITHUB_TOKEN", ""),
        help="GitHub access token (default: $GITHUB_TOKEN)",
    )
    parser.add_argument(
        "--ext",
        action="append",
        default=[],
        help="Select every file with this extension (repeatable)",
    )
    parser.add_argument(
        "--no-ext",
        action="append",
        default=[],
        help="Deselect every file with this extension (repeatable)",
    )
    parser.add_argument(
        "--only",
        action="append",
        default=[],
        help="Select exactly these files or directories (repeatable)",
    )
    parser.add_argument(
        "--select",
        action="append",
        default=[],
        help="Select a file or directory (repeatable)",
    )
    parser.add_argument(
        "--deselect",
        action="append",
        default=[],
        help="Deselect a file or directory (repeatable)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the annotated tree and extension groups, then exit",
    )
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Refine the selection interactively before generating",
    )
    parser.add_argument(
        "--no-size-bars",
        action="store_true",
        help="Hide size bars in tree listings",
    )
    parser.add_argument(
        "-p",
        "--print",
        action="store_true",
        dest="print_output",
        help="Print to stdout instead of clipboard",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Write the generated text to this file",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help=f"Write the generated text to ./{DEFAULT_OUTPUT_NAME} instead of clipboard",
    )
    parser.add_argument(
        "--zip",
        dest="zip_path",
        help=f"Also write the selected files into a zip archive (e.g. {DEFAULT_ZIP_NAME})",
    )
    parser.add_argument(
        "-s",
        "--stats",
        action="store_true",
        dest="print_stats",
        help="Print output stats (chars/bytes/tokens). For --print, stats go to stderr.",
    )
    parser.add_argument(
        "--token-encoding",
        default=DEFAULT_TOKEN_ENCODING,
        help=f"Tokenizer encoding used for the token count (default: {DEFAULT_TOKEN_ENCODING}).",
    )
    parser.add_argument(
        "--no-remember",
        action="store_true",
        help="Do not persist extension selections for the next run",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.interactive and not sys.stdin.isatty():
        print("Error: --interactive requires a TTY.", file=sys.stderr)
        sys.exit(2)

    settings = load_settings()
    size_bars = not args.no_size_bars and settings.get("showSizeBars", True) is not False

    try:
        source = open_source(args.source, token=args.token or None)
    except Repo2TxtError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        session = SelectionSession(initial_extension_states=saved_extension_states(settings))
        try:
            tree = session.load(source.list_entries())
        except Repo2TxtError as exc:
            print(f"Error fetching repository contents: {exc}", file=sys.stderr)
            sys.exit(1)

        if tree.skipped_entries:
            print(f"Warning: skipped {tree.skipped_entries} malformed entries.", file=sys.stderr)

        errors = apply_cli_toggles(tree, args)
        if errors:
            for message in errors:
                print(f"Error: {message}", file=sys.stderr)
            sys.exit(1)

        if args.list:
            print("\n".join(render_tree_listing(tree, size_bars=size_bars)))
            print()
            print("Extensions:")
            print("\n".join(render_extension_listing(tree)) or "No files.")
            print_selection_summary(tree)
            return

        if args.interactive:
            run_interactive_refinement(tree, size_bars=size_bars)

        if not args.no_remember:
            partial = {"extensionStates": tree.export_extension_states()}
            if isinstance(source, GitHubSource):
                partial["repoUrl"] = args.source
            save_settings(partial)

        try:
            document, contents = session.render(source.read_text, token_encoding=args.token_encoding)
        except EmptySelectionError:
            print(
                "Error: No files selected. Select at least one file or extension "
                "(see --list, --ext, --select).",
                file=sys.stderr,
            )
            sys.exit(1)
        except Repo2TxtError as exc:
            print(f"Error generating text: {exc}", file=sys.stderr)
            sys.exit(1)
    finally:
        source.close()

    zip_path = write_zip_archive(contents, Path(args.zip_path)) if args.zip_path else None

    stats_details = format_stats_details(document) if args.print_stats else None
    default_details = format_default_copy_details(document)
    output_count_text = f"{document.file_count} file(s)"

    if args.print_output:
        print(document.text, end="")
        if stats_details:
            print(f"Stats: {output_count_text}, {stats_details}", file=sys.stderr)
        if zip_path:
            print(f"Zip: {zip_path}", file=sys.stderr)
        return

    if args.output or args.save:
        out_path = write_output(document.text, Path(args.output or DEFAULT_OUTPUT_NAME))
        print(f"Saved to: {out_path}")
        print(f"Stats: {output_count_text}, {stats_details or default_details}")
    elif copy_to_clipboard(document.text):
        print(f"✓ Copied {output_count_text} to clipboard ({stats_details or default_details})")
    else:
        out_path = write_output(document.text, Path(DEFAULT_OUTPUT_NAME))
        print(f"Clipboard unavailable. Saved to: {out_path}")
        print(f"Stats: {output_count_text}, {stats_details or default_details}")
    if zip_path:
        print(f"Zip: {zip_path}")


if __name__ == "__main__":
    main()
