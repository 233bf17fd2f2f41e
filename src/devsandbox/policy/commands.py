"""Command safety classification.

A command is considered safe only when both stages agree:

1. No deny pattern (``DENY_PATTERNS``) matches the full command string.  The
   patterns target catastrophic operations: deleting the filesystem root,
   privilege escalation, piping remote scripts into an interpreter, writing
   under system configuration trees, reading credential files and destroying
   disks or the host.
2. Every command segment starts with an allow-listed program.  String commands
   are tokenised with :mod:`shlex` and split on shell control operators and
   line breaks, so ``npm test && curl ... | sh`` checks ``npm``, ``curl`` *and*
   ``sh``.

Backticks, ``$(...)`` (quoted or not) and process substitutions ``<(...)`` /
``>(...)`` are classified recursively.

Shell interpreters are allowed only with ``-c`` and their embedded string is
classified recursively.  Inline code passed to script interpreters
(``node -e``, ``python -c``) goes through the deny stage.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Pattern, Sequence, Tuple

from ..errors import ValidationError
from .rules import RuleDefinition

COMMAND_RULES: Dict[str, RuleDefinition] = {
    "CMD001": RuleDefinition("CMD001", "Empty command", "A command needs at least one token."),
    "CMD002": RuleDefinition("CMD002", "Root deletion", "Recursive deletion of /, ~ or system trees."),
    "CMD003": RuleDefinition("CMD003", "Privilege escalation", "sudo, su, doas, setuid bits and root ownership."),
    "CMD004": RuleDefinition(
        "CMD004",
        "Remote script execution",
        "Downloading a script and piping it straight into an interpreter.",
    ),
    "CMD005": RuleDefinition("CMD005", "System config write", "Writes under /etc, /usr, /boot and similar trees."),
    "CMD006": RuleDefinition("CMD006", "Credential read", "Access to shadow files, SSH keys, cloud credentials or .env."),
    "CMD007": RuleDefinition("CMD007", "Host destruction", "Formatting disks, fork bombs, shutting down the host."),
    "CMD010": RuleDefinition("CMD010", "Program not allowed", "The leading program is not on the allow-list."),
    "CMD011": RuleDefinition(
        "CMD011",
        "Opaque interpreter",
        "Shell interpreters may only run an inline -c string that can be inspected.",
    ),
    "CMD012": RuleDefinition("CMD012", "Nesting too deep", "Embedded shell strings nest beyond the inspection limit."),
    "CMD013": RuleDefinition("CMD013", "Unparseable command", "The command string could not be tokenised."),
}

# Command words count only in command position: start of string or line, after
# a control operator, or inside ``$(``, ``<(`` and ``>(``.  Inline interpreter
# code is scanned with the looser boundary so ``os.system('rm -rf /')`` is
# caught as well.
_COMMAND_START = r"(?:^|[;&|(`\r\n]|\$\()\s*"
_LOOSE_START = r"(?:^|[\s;&|(`'\"=])"
_END = r"(?=$|[\s;&|)`'\"])"
_SYSTEM_TREES = r"(?:etc|boot|usr|bin|sbin|lib|lib64|root|sys|proc|var|opt)"


@dataclass(slots=True, frozen=True)
class DenyPattern:
    """Regex describing a catastrophic operation.

    ``pattern`` is matched against full command strings; ``inline_pattern`` is
    used for code passed to ``node -e`` / ``python -c``.
    """

    rule: str
    pattern: Pattern[str]
    inline_pattern: Pattern[str]
    description: str


def _deny(rule: str, body: str, description: str, *, command_word: bool = True) -> DenyPattern:
    strict = _COMMAND_START + body if command_word else body
    loose = _LOOSE_START + body if command_word else body
    return DenyPattern(
        rule=rule,
        pattern=re.compile(strict, re.IGNORECASE),
        inline_pattern=re.compile(loose, re.IGNORECASE),
        description=description,
    )


DENY_PATTERNS: Tuple[DenyPattern, ...] = (
    _deny(
        "CMD002",
        r"rm\s+(?:-\S+\s+)*(?:--\s+)?['\"]?(?:/\*?|~/?\*?|\$HOME/?\*?|/home/?\*?|/"
        + _SYSTEM_TREES
        + r"/?\*?)['\"]?"
        + _END,
        "rm targeting the filesystem root, home or a system tree",
    ),
    _deny("CMD002", r"--no-preserve-root", "rm --no-preserve-root", command_word=False),
    _deny("CMD002", r"find\s+/\s[^;&|]*-(?:delete|exec)", "find over / with deletion"),
    _deny("CMD003", r"(?:sudo|su|doas|pkexec|runuser)" + _END, "privilege escalation"),
    _deny("CMD003", r"chmod\s+(?:-\S+\s+)*(?:[ugoa]*[+=][rwxXt]*s|[2467][0-7]{3})\b", "setuid/setgid bit"),
    _deny("CMD003", r"chown\s+(?:-\S+\s+)*root\b", "ownership change to root"),
    _deny("CMD003", r"setcap" + _END, "file capabilities"),
    _deny(
        "CMD004",
        r"(?:curl|wget|fetch)\b[^|;&]*\|\s*(?:sudo\s+)?(?:env\s+)?(?:ba|z|da|k|fi)?sh\b",
        "remote script piped into a shell",
    ),
    _deny(
        "CMD004",
        r"(?:curl|wget|fetch)\b[^|;&]*\|\s*(?:sudo\s+)?(?:python[\d.]*|node|perl|ruby|php)\b",
        "remote script piped into an interpreter",
    ),
    _deny("CMD004", r"(?:ba|z|da)?sh\s+<\(\s*(?:curl|wget)\b", "process substitution of a remote script"),
    _deny("CMD004", r"eval\b[^;&|]*\$\(\s*(?:curl|wget)\b", "eval of a remote script"),
    _deny(
        "CMD005",
        r">>?\s*['\"]?/" + _SYSTEM_TREES + r"/",
        "redirect into a system tree",
        command_word=False,
    ),
    _deny("CMD005", r"tee\s+(?:-\S+\s+)*['\"]?/" + _SYSTEM_TREES + r"/", "tee into a system tree"),
    _deny(
        "CMD005",
        r"(?:cp|mv|ln|install|rsync)\s[^;&|]*\s['\"]?/" + _SYSTEM_TREES + r"/\S*['\"]?\s*(?=$|[;&|])",
        "copy or move into a system tree",
    ),
    _deny("CMD005", r"sed\s+(?:-\S+\s+)*-i\S*\s[^;&|]*/(?:etc|boot|usr)/", "in-place edit of system config"),
    _deny("CMD006", r"/etc/(?:shadow|gshadow|sudoers|passwd)\b", "system account database", command_word=False),
    _deny("CMD006", r"(?:^|[\s'\"=/~])\.ssh/", "SSH directory", command_word=False),
    _deny("CMD006", r"\bid_(?:rsa|dsa|ecdsa|ed25519)\b", "private key", command_word=False),
    _deny(
        "CMD006",
        r"\.aws/credentials\b|\.docker/config\.json\b|(?:^|[\s'\"/])\.netrc\b",
        "cloud or registry credentials",
        command_word=False,
    ),
    _deny(
        "CMD006",
        r"(?:^|[\s'\"/=<])\.env(?:\.(?!example\b|sample\b|template\b)[\w-]+)?" + _END,
        "environment secrets file",
        command_word=False,
    ),
    _deny("CMD007", r"mkfs(?:\.\w+)?" + _END, "filesystem formatting"),
    _deny("CMD007", r"dd\s[^;&|]*\bof=/dev/", "raw device write"),
    _deny("CMD007", r">\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk)", "redirect onto a block device", command_word=False),
    _deny("CMD007", r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", "fork bomb", command_word=False),
    _deny("CMD007", r"(?:shutdown|reboot|halt|poweroff)" + _END, "host shutdown"),
    _deny("CMD007", r"kill(?:all)?\s+(?:-\S+\s+)*-1" + _END, "signal to every process"),
)

PACKAGE_MANAGERS: FrozenSet[str] = frozenset({"npm", "npx", "yarn", "pnpm", "bun", "corepack", "pip", "pip3", "uv"})
VCS_TOOLS: FrozenSet[str] = frozenset({"git"})
POSIX_UTILITIES: FrozenSet[str] = frozenset(
    {
        "ls", "pwd", "cat", "head", "tail", "less", "more", "grep", "egrep", "fgrep", "rg", "find",
        "tree", "mkdir", "touch", "cp", "mv", "wc", "sort", "uniq", "cut", "tr", "sed", "awk", "diff",
        "echo", "printf", "basename", "dirname", "realpath", "which", "date", "stat", "file", "du",
        "df", "ps", "pgrep", "true", "false", "test", "tar", "gzip", "gunzip", "zip", "unzip", "curl",
        "wget", "jq", "cd", "sleep", "rm", "rmdir", "chmod", "ln", "kill",
    }
)
NODE_TOOLCHAIN: FrozenSet[str] = frozenset(
    {
        "node", "tsc", "tsx", "ts-node", "next", "vite", "eslint", "prettier", "webpack", "esbuild",
        "turbo", "nodemon", "nest", "remix", "astro",
    }
)
TEST_RUNNERS: FrozenSet[str] = frozenset({"jest", "vitest", "mocha", "playwright", "cypress", "ava", "pytest"})
SCRIPT_INTERPRETERS: Dict[str, FrozenSet[str]] = {
    "node": frozenset({"-e", "--eval", "-p", "--print"}),
    "python": frozenset({"-c"}),
    "python3": frozenset({"-c"}),
}
SHELL_INTERPRETERS: FrozenSet[str] = frozenset({"sh", "bash", "zsh", "dash"})
DEFAULT_ALLOWED: FrozenSet[str] = (
    PACKAGE_MANAGERS | VCS_TOOLS | POSIX_UTILITIES | NODE_TOOLCHAIN | TEST_RUNNERS | frozenset(SCRIPT_INTERPRETERS)
)

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_SEPARATORS = frozenset({";", "&&", "||", "|", "&", "|&", ";;", "(", ")", "<(", ">("})
_REDIRECTIONS = frozenset({">", ">>", "<", "<<", "<<<", ">&", "<&", "&>", "&>>", ">|"})
_BACKTICK = re.compile(r"`([^`]*)`")
_TRUSTED_BIN_DIRS = ("/usr/bin/", "/usr/local/bin/", "/bin/")
_FIND_EXEC_FLAGS = frozenset({"-exec", "-execdir", "-ok", "-okdir"})


@dataclass(slots=True, frozen=True)
class CommandClassification:
    """Verdict for a single command."""

    command: str
    safe: bool
    rule: str | None = None
    matched_pattern: str | None = None
    reason: str | None = None

    @property
    def unsafe(self) -> bool:
        return not self.safe

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "safe": self.safe,
            "rule": self.rule,
            "matched_pattern": self.matched_pattern,
            "reason": self.reason,
        }


def _command_text(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(part) for part in command)


def _closing_paren(command: str, start: int) -> int:
    """Index of the ``)`` closing a group opened just before ``start``, or ``len(command)``."""
    depth = 1
    quote: str | None = None
    index = start
    while index < len(command):
        char = command[index]
        if quote is not None:
            if char == quote:
                quote = None
            elif char == "\\" and quote == '"':
                index += 1
        elif char == "\\":
            index += 1
        elif char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
        index += 1
    return len(command)


def _scan_shell(command: str) -> Tuple[str, List[str]]:
    """Flatten line breaks and collect substitution bodies.

    Unquoted newlines become ``;`` and backslash-newline continuations are
    joined, so the result tokenises into the same commands the shell would
    run.  The second item lists the bodies of every ``$(...)`` (outside single
    quotes) and every unquoted ``<(...)`` / ``>(...)``.  Arithmetic ``$((...))``
    flattens to ``0``; only the substitutions inside it are collected.
    """
    flattened: List[str] = []
    bodies: List[str] = []
    quote: str | None = None
    index = 0
    while index < len(command):
        char = command[index]
        if quote == "'":
            if char == "'":
                quote = None
            flattened.append(char)
            index += 1
            continue
        if char == "\\" and index + 1 < len(command):
            if command[index + 1] == "\n":
                index += 2
                continue
            flattened.append(command[index : index + 2])
            index += 2
            continue
        if command.startswith("$((", index):
            end = _closing_paren(command, index + 2)
            bodies.extend(_scan_shell(command[index + 3 : end - 1])[1])
            flattened.append("0")
            index = end + 1
            continue
        opener = command.startswith("$(", index) or (
            quote is None and char in "<>" and command.startswith("(", index + 1)
        )
        if opener:
            end = _closing_paren(command, index + 2)
            bodies.append(command[index + 2 : end])
            flattened.append(command[index : end + 1])
            index = end + 1
            continue
        if char == '"':
            quote = None if quote == '"' else '"'
        elif char == "'" and quote is None:
            quote = "'"
        elif char in "\r\n" and quote is None:
            char = ";"
        flattened.append(char)
        index += 1
    return "".join(flattened), bodies


def _tokenise(command: str) -> List[str]:
    """Split a shell string into words and control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_segments(tokens: Iterable[str]) -> List[List[str]]:
    """Group tokens into simple commands, dropping redirection targets."""
    segments: List[List[str]] = []
    current: List[str] = []
    skip_next = False
    for token in tokens:
        if skip_next:
            skip_next = False
            continue
        if token in _SEPARATORS or (token and set(token) <= set(";&|()")):
            if current:
                segments.append(current)
            current = []
            continue
        if token in _REDIRECTIONS:
            skip_next = True
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _program_name(token: str) -> str:
    if "node_modules/.bin/" in token or token.startswith(_TRUSTED_BIN_DIRS):
        return os.path.basename(token)
    return token


class CommandSafetyClassifier:
    """Two-stage classifier: deny patterns first, then the leading-token allow-list."""

    def __init__(
        self,
        *,
        allowed: Iterable[str] = DEFAULT_ALLOWED,
        extra_allowed: Iterable[str] = (),
        deny_patterns: Sequence[DenyPattern] = DENY_PATTERNS,
        max_depth: int = 4,
    ) -> None:
        self._allowed = frozenset(allowed) | frozenset(extra_allowed)
        self._deny_patterns = tuple(deny_patterns)
        self._max_depth = max_depth

    def classify(self, command: str | Sequence[str]) -> CommandClassification:
        """Classify a shell string or an argv list."""

        return self._classify(command, depth=0)

    def require(self, command: str | Sequence[str]) -> CommandClassification:
        """Return the classification or raise :class:`ValidationError` when unsafe."""

        verdict = self.classify(command)
        if verdict.unsafe:
            raise ValidationError(
                f"Command rejected: {verdict.reason}",
                rule=verdict.rule,
                details={"command": verdict.command, "matched_pattern": verdict.matched_pattern},
            )
        return verdict

    def check_deny(self, text: str, *, inline_code: bool = False) -> CommandClassification | None:
        """Return an unsafe verdict if any deny pattern matches ``text``."""

        for entry in self._deny_patterns:
            pattern = entry.inline_pattern if inline_code else entry.pattern
            if pattern.search(text):
                return CommandClassification(
                    command=text,
                    safe=False,
                    rule=entry.rule,
                    matched_pattern=pattern.pattern,
                    reason=f"matches deny pattern: {entry.description}",
                )
        return None

    def _classify(self, command: str | Sequence[str], *, depth: int) -> CommandClassification:
        text = _command_text(command)
        if depth > self._max_depth:
            return self._unsafe(text, "CMD012", "embedded shell strings nest too deeply")
        if not text.strip():
            return self._unsafe(text, "CMD001", "command is empty")

        if isinstance(command, str):
            flattened, substitutions = _scan_shell(command)
        else:
            flattened, substitutions = text, []

        for candidate in dict.fromkeys((text, flattened)):
            denied = self.check_deny(candidate)
            if denied is not None:
                return replace(denied, command=text)

        if isinstance(command, str):
            for embedded in _BACKTICK.findall(command) + substitutions:
                if not embedded.strip():
                    continue
                nested = self._classify(embedded, depth=depth + 1)
                if nested.unsafe:
                    return self._wrap(text, nested)
            try:
                tokens = _tokenise(flattened)
            except ValueError as error:
                return self._unsafe(text, "CMD013", f"could not tokenise command: {error}")
            segments = _split_segments(tokens)
        else:
            segments = [[str(part) for part in command]]

        if not segments:
            return self._unsafe(text, "CMD001", "command has no executable segment")

        for segment in segments:
            verdict = self._classify_segment(text, segment, depth=depth)
            if verdict is not None:
                return verdict
        return CommandClassification(command=text, safe=True)

    def _classify_segment(self, text: str, segment: List[str], *, depth: int) -> CommandClassification | None:
        words = list(segment)
        while words and _ASSIGNMENT.match(words[0]):
            words.pop(0)
        if not words:
            return None
        program = _program_name(words[0])
        arguments = words[1:]

        if program in SHELL_INTERPRETERS:
            embedded = _inline_shell_command(arguments)
            if embedded is None:
                return self._unsafe(
                    text,
                    "CMD011",
                    f"shell '{program}' must be invoked with -c and an inspectable command",
                    matched=program,
                )
            nested = self._classify(embedded, depth=depth + 1)
            return self._wrap(text, nested) if nested.unsafe else None

        if program not in self._allowed:
            return self._unsafe(text, "CMD010", f"program '{program}' is not allow-listed", matched=program)

        inline_flags = SCRIPT_INTERPRETERS.get(program)
        if inline_flags:
            for index, argument in enumerate(arguments[:-1]):
                if argument in inline_flags:
                    denied = self.check_deny(arguments[index + 1], inline_code=True)
                    if denied is not None:
                        return self._wrap(text, denied)

        if program == "find":
            for embedded_argv in _find_exec_commands(arguments):
                nested = self._classify(embedded_argv, depth=depth + 1)
                if nested.unsafe:
                    return self._wrap(text, nested)
        return None

    def _wrap(self, text: str, nested: CommandClassification) -> CommandClassification:
        return CommandClassification(
            command=text,
            safe=False,
            rule=nested.rule,
            matched_pattern=nested.matched_pattern,
            reason=f"embedded command rejected: {nested.reason}",
        )

    @staticmethod
    def _unsafe(text: str, rule: str, reason: str, *, matched: str | None = None) -> CommandClassification:
        return CommandClassification(command=text, safe=False, rule=rule, matched_pattern=matched, reason=reason)


def _inline_shell_command(arguments: Sequence[str]) -> str | None:
    """Return the ``-c`` string passed to a shell, if any."""
    has_c = False
    for argument in arguments:
        if argument.startswith("-") and not argument.startswith("--"):
            if "c" in argument[1:]:
                has_c = True
            continue
        if argument.startswith("--"):
            continue
        return argument if has_c else None
    return None


def _find_exec_commands(arguments: Sequence[str]) -> List[List[str]]:
    """Extract the argv of every ``find -exec`` clause."""
    commands: List[List[str]] = []
    index = 0
    while index < len(arguments):
        if arguments[index] in _FIND_EXEC_FLAGS:
            embedded: List[str] = []
            index += 1
            while index < len(arguments) and arguments[index] not in {";", "\\;", "+"}:
                embedded.append(arguments[index])
                index += 1
            if embedded:
                commands.append(embedded)
        index += 1
    return commands


_DEFAULT_CLASSIFIER = CommandSafetyClassifier()


def classify_command(command: str | Sequence[str]) -> CommandClassification:
    """Classify ``command`` with the default classifier."""

    return _DEFAULT_CLASSIFIER.classify(command)


__all__ = [
    "COMMAND_RULES",
    "CommandClassification",
    "CommandSafetyClassifier",
    "DEFAULT_ALLOWED",
    "DENY_PATTERNS",
    "DenyPattern",
    "classify_command",
]
