"""Local tools the model can call. These run on the client machine, against a workspace directory.

  - `read_file(filename)`: return the contents of a text file.
  - `grep(search_term, filter, context_lines=2)`: regex search over the workspace.

Tool failures are not exceptions from the caller's point of view: `execute` always returns text,
which is sent to the model as the tool result, so that the model can see what went wrong and react.
"""

__all__ = ["setup",
           "read_file", "grep",
           "execute"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import functools
import json
import os
import pathlib
import re
from typing import Callable, List, Optional, Tuple, Union

import pathspec

from unpythonic import timer
from unpythonic.env import env

skip_dirs = {".git", ".hg", ".svn", "__pycache__", "node_modules", ".venv", "venv", ".mypy_cache", ".pytest_cache", ".tox"}
ignore_filenames = (".gitignore", ".ignore")

max_read_size = 1024 * 1024  # bytes
max_grep_file_size = 10 * 1024 * 1024  # bytes; larger files are not searched
max_grep_matches = 200
max_grep_output_chars = 32000
max_context_lines = 50

# --------------------------------------------------------------------------------
# Setup

def setup(workspace_dir: Union[str, pathlib.Path]) -> env:
    """Bind the tools to `workspace_dir`.

    Return an `unpythonic.env.env` with:

        `workspace_dir: pathlib.Path`: absolute path of the workspace.

        `tool_entrypoints: Dict[str, Callable]`: The Python functions that implement the tools,
                                                 keyed by the tool names the model uses.
    """
    workspace_dir = pathlib.Path(workspace_dir).expanduser().resolve()
    tool_entrypoints = {"read_file": functools.partial(read_file, workspace_dir),
                        "grep": functools.partial(grep, workspace_dir)}
    return env(workspace_dir=workspace_dir,
               tool_entrypoints=tool_entrypoints)

def _resolve(workspace_dir: pathlib.Path, filename: str) -> pathlib.Path:
    path = pathlib.Path(filename).expanduser()
    if not path.is_absolute():
        path = workspace_dir / path
    return path.resolve()

def _is_binary(path: pathlib.Path) -> bool:
    """Null-byte probe on the first 8 KiB."""
    with open(path, "rb") as f:
        return b"\x00" in f.read(8192)

# --------------------------------------------------------------------------------
# read_file

def read_file(workspace_dir: pathlib.Path, filename: str) -> str:
    """Return the contents of `filename` (absolute, or relative to the workspace), or an error string."""
    if not isinstance(filename, str) or not filename:
        return "Error: no filename provided"
    path = _resolve(workspace_dir, filename)
    if not path.exists():
        return f"Error: file not found: {filename}"
    if path.is_dir():
        return f"Error: {filename} is a directory, not a file"
    try:
        size = path.stat().st_size
        if size > max_read_size:
            return f"Error: file too large ({size} bytes, maximum is {max_read_size})"
        if _is_binary(path):
            return f"Error: {filename} looks like a binary file"
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError as exc:
        return f"Error: cannot read {filename}: {exc}"

# --------------------------------------------------------------------------------
# grep

class _IgnoreRules:
    """Gitignore-style rules collected from `.gitignore`/`.ignore` files while walking the workspace.

    Each file's patterns apply relative to the directory it is in.
    """
    def __init__(self):
        self.specs: List[Tuple[str, pathspec.PathSpec]] = []  # (directory relative to workspace, "" for root; spec)

    def load(self, directory: pathlib.Path, relative_directory: str) -> None:
        for ignore_filename in ignore_filenames:
            ignore_file = directory / ignore_filename
            if not ignore_file.is_file():
                continue
            try:
                with open(ignore_file, "r", encoding="utf-8", errors="replace") as f:
                    spec = pathspec.GitIgnoreSpec.from_lines(f.read().splitlines())
            except OSError as exc:
                logger.warning(f"_IgnoreRules.load: cannot read '{ignore_file}': {exc}")
                continue
            self.specs.append((relative_directory, spec))

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        for base, spec in self.specs:
            if base:
                if not relative_path.startswith(f"{base}/"):
                    continue
                path_in_base = relative_path[len(base) + 1:]
            else:
                path_in_base = relative_path
            if is_dir:
                path_in_base = f"{path_in_base}/"
            if spec.match_file(path_in_base):
                return True
        return False

def _walk_workspace(workspace_dir: pathlib.Path):
    """Yield `(relative_path, absolute_path)` of the non-ignored files in the workspace, in sorted order."""
    rules = _IgnoreRules()
    for root, dirs, files in os.walk(workspace_dir):
        root_path = pathlib.Path(root)
        relative_root = root_path.relative_to(workspace_dir).as_posix()
        if relative_root == ".":
            relative_root = ""
        rules.load(root_path, relative_root)

        def relative(name: str) -> str:
            return f"{relative_root}/{name}" if relative_root else name

        dirs[:] = sorted(d for d in dirs
                         if d not in skip_dirs and not rules.is_ignored(relative(d), is_dir=True))
        for name in sorted(files):
            relative_path = relative(name)
            if not rules.is_ignored(relative_path):
                yield relative_path, root_path / name

def _merge_blocks(match_linenos: List[int], context_lines: int, n_lines: int) -> List[Tuple[int, int]]:
    """Merge overlapping/adjacent context windows around 0-based match line numbers. Return inclusive (first, last) ranges."""
    blocks = []
    for lineno in match_linenos:
        first = max(0, lineno - context_lines)
        last = min(n_lines - 1, lineno + context_lines)
        if blocks and first <= blocks[-1][1] + 1:
            blocks[-1] = (blocks[-1][0], max(blocks[-1][1], last))
        else:
            blocks.append((first, last))
    return blocks

def grep(workspace_dir: pathlib.Path, search_term: str, filter: str, context_lines: int = 2) -> str:
    """Search the workspace for lines matching the regex `search_term`.

    `filter`: gitignore-style glob matched against workspace-relative paths, e.g. "*.py" or "src/**/*.rs".
    `context_lines`: number of lines to show before and after each match.

    Skips `.git` (and similar), paths matched by `.gitignore`/`.ignore` files, and binary files.

    Output looks like::

        src/foo.py:10-14
            10: def foo():
            11:     x = 1
        >   12:     return search_term_here
            13:
            14: def bar():

    with one block per group of nearby matches. Matching lines are marked with ">".
    """
    if not isinstance(search_term, str) or not search_term:
        return "Error: no search_term provided"
    if not isinstance(filter, str) or not filter:
        return "Error: no filter provided"
    if isinstance(context_lines, bool):
        return "Error: context_lines must be an integer"
    try:
        context_lines = int(context_lines)
    except (TypeError, ValueError):
        return "Error: context_lines must be an integer"
    if context_lines < 0:
        return "Error: context_lines must be >= 0"
    context_lines = min(context_lines, max_context_lines)

    try:
        pattern = re.compile(search_term)
    except re.error as exc:
        return f"Error: invalid regex: {exc}"
    file_filter = pathspec.PathSpec.from_lines("gitwildmatch", [filter])

    output = []
    output_chars = 0
    n_matches = 0
    n_files = 0
    truncated = False
    for relative_path, path in _walk_workspace(workspace_dir):
        if not file_filter.match_file(relative_path):
            continue
        try:
            if path.stat().st_size > max_grep_file_size or _is_binary(path):
                continue
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                lines = f.read().splitlines()
        except OSError as exc:
            logger.warning(f"grep: skipping '{relative_path}': {exc}")
            continue

        match_linenos = [k for k, line in enumerate(lines) if pattern.search(line)]
        if not match_linenos:
            continue
        if n_matches + len(match_linenos) > max_grep_matches:
            match_linenos = match_linenos[:max_grep_matches - n_matches]
            truncated = True
        n_matches += len(match_linenos)
        n_files += 1
        matched = set(match_linenos)

        for first, last in _merge_blocks(match_linenos, context_lines, len(lines)):
            block = [f"{relative_path}:{first + 1}-{last + 1}"]
            for k in range(first, last + 1):
                marker = ">" if k in matched else " "
                block.append(f"{marker}{k + 1:5d}: {lines[k]}")
            text = "\n".join(block)
            if output and output_chars + len(text) > max_grep_output_chars:
                truncated = True
                break
            output.append(text)
            output_chars += len(text) + 2
        if truncated:
            break

    if not output:
        return f"No matches found for '{search_term}' in files matching '{filter}'"
    plural_m = "es" if n_matches != 1 else ""
    plural_f = "s" if n_files != 1 else ""
    header = f"Found {n_matches} match{plural_m} in {n_files} file{plural_f}."
    if truncated:
        header = f"{header} Output truncated; narrow down the search to see more."
    return "\n\n".join([header] + output)

# --------------------------------------------------------------------------------
# Dispatch

def execute(toolbox: env, name: str, arguments: Optional[str]) -> str:
    """Run tool `name` with `arguments` (a JSON object, serialized), return the result text.

    `toolbox`: obtain this by calling `setup()`.

    Never raises for tool-level problems (unknown tool, bad arguments, exception inside the tool);
    these become the result text, starting with "Tool call failed.".
    """
    try:
        function: Callable = toolbox.tool_entrypoints[name]
    except KeyError:
        logger.warning(f"execute: unknown function '{name}'.")
        return f"Tool call failed. Function not found: '{name}'."

    if arguments is None or not arguments.strip():
        kwargs = {}
    else:
        try:
            kwargs = json.loads(arguments)
        except Exception as exc:
            logger.warning(f"execute: function '{name}': failed to parse JSON for arguments: {type(exc)}: {exc}")
            return f"Tool call failed. When calling '{name}', failed to parse the request's JSON for the function arguments."
    if not isinstance(kwargs, dict):
        logger.warning(f"execute: function '{name}': arguments are not a JSON object: {kwargs!r}")
        return f"Tool call failed. When calling '{name}', the function arguments must be a JSON object."

    logger.info(f"execute: calling '{name}' with arguments {kwargs}.")
    try:
        with timer() as tim:
            result = function(**kwargs)
    except Exception as exc:
        logger.warning(f"execute: function '{name}': exited with exception {type(exc)}: {exc}")
        return f"Tool call failed. Function '{name}' exited with exception {type(exc)}: {exc}"
    logger.info(f"execute: function '{name}' returned successfully in {tim.dt:0.3f}s.")
    return result
