"""Validation pipeline run against a sandbox's repository.

Every step is one shell command executed through SandboxManager.run_command, so
the same pipeline works for every backend. A step may carry a precondition (a
cheap shell test) that decides whether it applies to the repository at all.
Command failures are reported in the step result, never raised.
"""

import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass

from foldbox.configs import SANDBOX_BUILD_COMMAND
from foldbox.configs import SANDBOX_BUILD_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_FILE_TYPECHECK_COMMAND
from foldbox.configs import SANDBOX_LINT_COMMAND
from foldbox.configs import SANDBOX_TEST_COMMAND
from foldbox.configs import SANDBOX_TEST_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_TYPECHECK_COMMAND
from foldbox.configs import SANDBOX_VALIDATION_STEP_TIMEOUT_SECONDS
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import SnapshotDiff
from foldbox.sandbox.models import ValidationStepResult
from foldbox.sandbox.runtime.base import EXEC_TIMEOUT_EXIT_CODE
from foldbox.utils.logger import setup_logger

logger = setup_logger()

# (command, timeout_seconds) -> result of running the command in the repository
CommandRunner = Callable[[str, float], ExecResult]

STEP_ERROR_CHARS = 2000
STEP_WARNING_CHARS = 500
FILE_ERROR_LINE_CHARS = 500
# Changed paths listed per category in the diff step
DIFF_LISTING_LIMIT = 10
LARGE_CHANGE_SET_FILES = 50

_PRECONDITION_TIMEOUT_SECONDS = 5
_MEASURE_TIMEOUT_SECONDS = 10

_PASSED_RE = re.compile(r"(\d+)\s+pass", re.IGNORECASE)
_FAILED_RE = re.compile(r"(\d+)\s+fail", re.IGNORECASE)

TYPESCRIPT_SUFFIXES = (".ts", ".tsx")

_HAS_TSCONFIG = "test -f tsconfig.json"
_HAS_ESLINT_CONFIG = "ls eslint.config.* .eslintrc* >/dev/null 2>&1"
_HAS_TEST_SETUP = (
    "ls jest.config.* vitest.config.* >/dev/null 2>&1 || "
    "grep -q '\"test\"[[:space:]]*:' package.json 2>/dev/null"
)
_HAS_BUILD_SCRIPT = "grep -q '\"build\"[[:space:]]*:' package.json 2>/dev/null"

# First existing output directory wins
_BUNDLE_SIZE_COMMAND = "du -sk dist build .next out 2>/dev/null | head -n 1"
_SOURCE_COUNT_COMMAND = (
    "find . \\( -name node_modules -o -name .next -o -name .git \\) -prune -o "
    "-type f \\( -name '*.ts' -o -name '*.tsx' -o -name '*.js' -o -name '*.jsx' \\) "
    "-print | wc -l"
)


@dataclass(frozen=True)
class ValidationStep:
    name: str
    command: str
    timeout: float
    # Shell test run before the step; a non-zero exit skips the step
    precondition: str | None = None
    skip_reason: str = "precondition not met"
    # Pull "N passed" / "N failed" counts out of the output into metrics
    count_tests: bool = False


def build_default_steps() -> list[ValidationStep]:
    """typecheck, lint and test, minus any whose command is configured empty."""
    steps = [
        ValidationStep(
            name="typecheck",
            command=SANDBOX_TYPECHECK_COMMAND,
            timeout=SANDBOX_VALIDATION_STEP_TIMEOUT_SECONDS,
            precondition=_HAS_TSCONFIG,
            skip_reason="no TypeScript config",
        ),
        ValidationStep(
            name="lint",
            command=SANDBOX_LINT_COMMAND,
            timeout=SANDBOX_VALIDATION_STEP_TIMEOUT_SECONDS,
            precondition=_HAS_ESLINT_CONFIG,
            skip_reason="no ESLint config",
        ),
        ValidationStep(
            name="test",
            command=SANDBOX_TEST_COMMAND,
            timeout=SANDBOX_TEST_TIMEOUT_SECONDS,
            precondition=_HAS_TEST_SETUP,
            skip_reason="no test configuration",
            count_tests=True,
        ),
    ]
    return [step for step in steps if step.command]


def _combined_output(result: ExecResult) -> str:
    return "\n".join(
        part.rstrip() for part in (result.stdout, result.stderr) if part.strip()
    )


def _skipped(step: str, reason: str) -> ValidationStepResult:
    return ValidationStepResult(
        step=step, skipped=True, warnings=[f"Skipped: {reason}"]
    )


def run_validation_step(
    run: CommandRunner, step: ValidationStep
) -> ValidationStepResult:
    if step.precondition:
        check = run(step.precondition, _PRECONDITION_TIMEOUT_SECONDS)
        if check.exit_code != 0:
            return _skipped(step.name, step.skip_reason)

    result = run(step.command, step.timeout)
    output = _combined_output(result)
    errors: list[str] = []
    warnings: list[str] = []
    metrics: dict[str, int] = {}

    if result.exit_code == 0:
        if "warning" in output.lower():
            warnings.append(output[:STEP_WARNING_CHARS])
    else:
        if result.exit_code == EXEC_TIMEOUT_EXIT_CODE:
            errors.append(f"{step.name} timed out after {step.timeout}s")
        errors.append(
            output[:STEP_ERROR_CHARS]
            if output
            else f"{step.name} exited with code {result.exit_code}"
        )

    if step.count_tests:
        passed = _PASSED_RE.search(output)
        failed = _FAILED_RE.search(output)
        if passed:
            metrics["tests_passed"] = int(passed.group(1))
        if failed:
            metrics["tests_failed"] = int(failed.group(1))

    logger.debug(f"Validation step {step.name} exited with {result.exit_code}")
    return ValidationStepResult(
        step=step.name,
        success=not errors,
        errors=errors,
        warnings=warnings,
        metrics=metrics,
        duration_ms=result.duration_ms,
    )


def _describe_paths(verb: str, paths: list[str]) -> str:
    listed = ", ".join(paths[:DIFF_LISTING_LIMIT])
    if len(paths) > DIFF_LISTING_LIMIT:
        listed += f" (+{len(paths) - DIFF_LISTING_LIMIT} more)"
    return f"{verb} {len(paths)} files: {listed}"


def build_diff_step(diff: SnapshotDiff) -> ValidationStepResult:
    """Report changes since the baseline. Never fails; large change sets only warn."""
    warnings: list[str] = []
    if diff.created:
        warnings.append(_describe_paths("Created", diff.created))
    if diff.modified:
        warnings.append(_describe_paths("Modified", diff.modified))
    if diff.deleted:
        warnings.append(_describe_paths("Deleted", diff.deleted))
    warnings.append(
        f"Unchanged: {diff.unchanged_count} files. "
        f"Net diff: {diff.total_diff_bytes / 1024:.1f}KB"
    )
    if len(diff.created) + len(diff.modified) > LARGE_CHANGE_SET_FILES:
        warnings.append(
            f"Large change set (>{LARGE_CHANGE_SET_FILES} files), review carefully"
        )

    return ValidationStepResult(
        step="diff",
        warnings=warnings,
        metrics={
            "files_created": len(diff.created),
            "files_modified": len(diff.modified),
            "files_deleted": len(diff.deleted),
            "files_unchanged": diff.unchanged_count,
            "total_diff_bytes": diff.total_diff_bytes,
        },
    )


def build_baseline_missing_step() -> ValidationStepResult:
    return _skipped("diff", "no baseline snapshot recorded")


def run_benchmark(run: CommandRunner) -> ValidationStepResult:
    """Build timing, bundle size and source file count. Never fails."""
    warnings: list[str] = []
    metrics: dict[str, int] = {}

    if run(_HAS_BUILD_SCRIPT, _PRECONDITION_TIMEOUT_SECONDS).exit_code == 0:
        build = run(SANDBOX_BUILD_COMMAND, SANDBOX_BUILD_TIMEOUT_SECONDS)
        metrics["build_duration_ms"] = build.duration_ms
        if build.exit_code == 0:
            warnings.append(f"Build completed in {build.duration_ms / 1000:.1f}s")
            size = run(_BUNDLE_SIZE_COMMAND, _MEASURE_TIMEOUT_SECONDS)
            fields = size.stdout.split()
            if len(fields) == 2 and fields[0].isdigit():
                metrics["bundle_size_kb"] = int(fields[0])
                warnings.append(f"Bundle size ({fields[1]}/): {fields[0]}KB")
        else:
            warnings.append(f"Build failed after {build.duration_ms / 1000:.1f}s")
            metrics["build_failed"] = 1
    else:
        warnings.append("No build script found, build benchmark skipped")

    count = run(_SOURCE_COUNT_COMMAND, _MEASURE_TIMEOUT_SECONDS)
    if count.exit_code == 0 and count.stdout.strip().isdigit():
        metrics["source_file_count"] = int(count.stdout.strip())
        warnings.append(f"Source files: {metrics['source_file_count']}")

    return ValidationStepResult(step="benchmark", warnings=warnings, metrics=metrics)


def run_file_typecheck(run: CommandRunner, relative_path: str) -> ValidationStepResult:
    """Typecheck the project and keep only the errors reported for one file.

    relative_path must already be normalized to the repository root.
    """
    if not relative_path.endswith(TYPESCRIPT_SUFFIXES):
        return _skipped("typecheck", "not a TypeScript file")
    if not SANDBOX_FILE_TYPECHECK_COMMAND:
        return _skipped("typecheck", "file typecheck disabled")

    quoted_path = shlex.quote(relative_path)
    if run(f"test -f {quoted_path}", _PRECONDITION_TIMEOUT_SECONDS).exit_code != 0:
        return ValidationStepResult(
            step="typecheck",
            success=False,
            errors=[f"File not found: {relative_path}"],
        )

    result = run(
        f"{SANDBOX_FILE_TYPECHECK_COMMAND} 2>&1 | grep -F -- {quoted_path} || true",
        SANDBOX_VALIDATION_STEP_TIMEOUT_SECONDS,
    )
    errors = [
        line[:FILE_ERROR_LINE_CHARS]
        for line in result.stdout.splitlines()
        if "error TS" in line
    ]
    if result.exit_code == EXEC_TIMEOUT_EXIT_CODE:
        errors.append(
            f"typecheck timed out after {SANDBOX_VALIDATION_STEP_TIMEOUT_SECONDS}s"
        )

    return ValidationStepResult(
        step="typecheck",
        success=not errors,
        errors=errors,
        duration_ms=result.duration_ms,
    )
