"""Host readiness checks run before an image build."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from kvmdisk.constants import (
    GIB,
    KVM_DEVICE,
    MIN_AVAILABLE_MEMORY_KB,
    MIN_FREE_DISK_BYTES,
    REQUIRED_TOOLS,
)
from kvmdisk.host import collect_host_facts
from kvmdisk.models import CheckResult, CheckStatus, HostFacts, PreflightReport

_SECTION_TITLES = {
    "disk_space": "Disk space",
    "memory": "Memory",
    "virtualization": "Virtualization",
}
_TOOLS_SECTION = "Required commands"

KVM_MISCONFIGURED = f"{KVM_DEVICE} missing; ensure KVM modules are loaded and user has permissions."
KVM_INCAPABLE = "No hardware virtualization flags detected; KVM acceleration may be unavailable."

CheckOutcome = Tuple[List[CheckResult], List[str]]


def check_tools(facts: HostFacts) -> Tuple[List[CheckResult], List[str]]:
    """Return tool check results and the names of missing tools.

    Missing tools are advisory: they are listed in the report but never turned
    into blocking issues.
    """
    results: List[CheckResult] = []
    missing: List[str] = []
    for tool, resolved in facts.tools.items():
        if resolved:
            results.append(CheckResult(tool, CheckStatus.OK, f"{tool} found at {resolved}"))
        else:
            results.append(CheckResult(tool, CheckStatus.MISSING, tool))
            missing.append(tool)
    return results, missing


def check_disk_space(facts: HostFacts) -> CheckOutcome:
    available_gb = facts.free_disk_bytes / GIB
    detail = f"Available space: {available_gb:.1f}G"
    if facts.free_disk_bytes < MIN_FREE_DISK_BYTES:
        issue = (
            f"At least {MIN_FREE_DISK_BYTES // GIB}G free disk space recommended; "
            f"only {available_gb:.1f}G available."
        )
        return [CheckResult("disk_space", CheckStatus.WARN, detail)], [issue]
    return [CheckResult("disk_space", CheckStatus.OK, detail)], []


def check_memory(facts: HostFacts) -> CheckOutcome:
    available_gb = facts.mem_available_kb / 1024 / 1024
    detail = f"Available memory: {available_gb:.1f}G"
    if facts.mem_available_kb < MIN_AVAILABLE_MEMORY_KB:
        issue = (
            f"At least {MIN_AVAILABLE_MEMORY_KB // (1024 * 1024)}G available memory recommended; "
            f"only {available_gb:.1f}G detected."
        )
        return [CheckResult("memory", CheckStatus.WARN, detail)], [issue]
    return [CheckResult("memory", CheckStatus.OK, detail)], []


def check_virtualization(facts: HostFacts) -> CheckOutcome:
    if facts.kvm_device:
        return [CheckResult("virtualization", CheckStatus.OK, f"{KVM_DEVICE} present")], []
    if facts.cpu_virt_flags:
        detail = (
            f"{KVM_DEVICE} not present; CPU virtualization flags detected, "
            "but KVM device missing (is kvm module loaded?)."
        )
        return [CheckResult("virtualization", CheckStatus.WARN, detail)], [KVM_MISCONFIGURED]
    detail = f"{KVM_DEVICE} not present; no vmx/svm CPU flags."
    return [CheckResult("virtualization", CheckStatus.WARN, detail)], [KVM_INCAPABLE]


def evaluate(facts: HostFacts) -> PreflightReport:
    """Evaluate every check against a fixed set of host facts.

    The checks are independent of one another and all of them always run, so
    the report is a complete remediation list rather than the first failure.
    """
    report = PreflightReport()
    tool_results, missing = check_tools(facts)
    report.checks.extend(tool_results)
    report.missing_tools.extend(missing)
    for check in (check_disk_space, check_memory, check_virtualization):
        results, issues = check(facts)
        report.checks.extend(results)
        report.blocking_issues.extend(issues)
    return report


def render_report(report: PreflightReport) -> None:
    current: Optional[str] = None
    for result in report.checks:
        section = _SECTION_TITLES.get(result.name, _TOOLS_SECTION)
        if section != current:
            print(f"\n=== {section} ===")
            current = section
        print(f"[{result.status.value}] {result.detail}")

    print("\n=== Summary ===")
    if report.missing_tools:
        print(f"Missing commands: {' '.join(report.missing_tools)}")
    else:
        print("All required commands found.")
    if report.blocking_issues:
        print("Issues detected:")
        for issue in report.blocking_issues:
            print(f" - {issue}")
    else:
        print("No blocking issues detected.")


class PreflightValidator:
    """Collect host facts and turn them into a PreflightReport."""

    def __init__(
        self,
        target: Path = Path("."),
        tools: Iterable[str] = REQUIRED_TOOLS,
        probe: Callable[[Path, Iterable[str]], HostFacts] = collect_host_facts,
    ) -> None:
        self.target = target
        self.tools = tuple(tools)
        self.probe = probe

    def validate(self) -> PreflightReport:
        return evaluate(self.probe(self.target, self.tools))

    def run(self) -> int:
        """Validate, print the checklist and return the process exit code."""
        report = self.validate()
        render_report(report)
        return report.exit_code
