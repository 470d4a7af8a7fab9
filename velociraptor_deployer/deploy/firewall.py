"""Named inbound allow rules for the server's TCP ports."""

from __future__ import annotations

import platform
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from velociraptor_deployer.errors import StepWarning
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.runner import CommandResult, CommandRunner

LOGGER = get_logger("deploy.firewall")

SOCKETFILTERFW = "/usr/libexec/ApplicationFirewall/socketfilterfw"
_UFW_NUMBERED_LINE = re.compile(r"^\[\s*(?P<number>\d+)\]\s.*?#\s*(?P<comment>\S+)\s*$")


def rule_name(environment: str, port: int) -> str:
    """Return the rule name for one (environment, port) pair."""
    return f"Velociraptor-{environment}-{port}"


@dataclass(frozen=True)
class FirewallRule:
    """Inbound TCP allow rule."""

    name: str
    port: int
    program: Path | None = None


class Firewall(ABC):
    """Create, query and delete named allow rules; creation is idempotent."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self.runner = runner or CommandRunner()

    @abstractmethod
    def exists(self, rule: FirewallRule) -> bool:
        """Return whether ``rule`` is already present."""

    @abstractmethod
    def _add(self, rule: FirewallRule) -> CommandResult:
        """Create ``rule`` unconditionally."""

    @abstractmethod
    def _delete(self, rule: FirewallRule) -> CommandResult:
        """Delete ``rule``."""

    def ensure(self, rule: FirewallRule) -> bool:
        """Create ``rule`` unless present; return whether anything was added."""
        if self.exists(rule):
            LOGGER.debug("Firewall rule already present", extra={"rule": rule.name})
            return False
        result = self._add(rule)
        if not result.ok:
            raise OSError(f"Could not add firewall rule {rule.name}: {result.describe()}")
        LOGGER.info("Firewall rule added", extra={"rule": rule.name, "port": rule.port})
        return True

    def remove(self, rule: FirewallRule) -> bool:
        """Delete ``rule`` if present; return whether anything was removed."""
        if not self.exists(rule):
            return False
        result = self._delete(rule)
        if not result.ok:
            raise OSError(f"Could not remove firewall rule {rule.name}: {result.describe()}")
        LOGGER.info("Firewall rule removed", extra={"rule": rule.name})
        return True


class NetshFirewall(Firewall):
    """Windows Defender Firewall through ``netsh advfirewall``."""

    def exists(self, rule: FirewallRule) -> bool:
        result = self.runner.run(
            ["netsh", "advfirewall", "firewall", "show", "rule", f"name={rule.name}"]
        )
        return result.ok

    def _add(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run(
            [
                "netsh",
                "advfirewall",
                "firewall",
                "add",
                "rule",
                f"name={rule.name}",
                "dir=in",
                "action=allow",
                "protocol=TCP",
                f"localport={rule.port}",
            ]
        )

    def _delete(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run(
            ["netsh", "advfirewall", "firewall", "delete", "rule", f"name={rule.name}"]
        )


class UfwFirewall(Firewall):
    """Uncomplicated Firewall, with the rule name stored as the rule comment.

    Rules are found and deleted by number so that other allow rules on the
    same port are left alone.
    """

    def _numbers(self, rule: FirewallRule) -> tuple[CommandResult, list[int]]:
        result = self.runner.run(["ufw", "status", "numbered"])
        numbers: list[int] = []
        if result.ok:
            for line in result.stdout.splitlines():
                match = _UFW_NUMBERED_LINE.match(line.strip())
                if match and match.group("comment") == rule.name:
                    numbers.append(int(match.group("number")))
        return result, numbers

    def exists(self, rule: FirewallRule) -> bool:
        return bool(self._numbers(rule)[1])

    def _add(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run(["ufw", "allow", f"{rule.port}/tcp", "comment", rule.name])

    def _delete(self, rule: FirewallRule) -> CommandResult:
        result, numbers = self._numbers(rule)
        # Highest first; ufw renumbers the rules after each delete.
        for number in sorted(numbers, reverse=True):
            result = self.runner.run(["ufw", "--force", "delete", str(number)])
            if not result.ok:
                break
        return result


class IptablesFirewall(Firewall):
    """Plain iptables INPUT rules tagged with a comment match."""

    def _spec(self, rule: FirewallRule) -> list[str]:
        return [
            "INPUT",
            "-p",
            "tcp",
            "--dport",
            str(rule.port),
            "-m",
            "comment",
            "--comment",
            rule.name,
            "-j",
            "ACCEPT",
        ]

    def exists(self, rule: FirewallRule) -> bool:
        return self.runner.run(["iptables", "-C", *self._spec(rule)]).ok

    def _add(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run(["iptables", "-A", *self._spec(rule)])

    def _delete(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run(["iptables", "-D", *self._spec(rule)])


class ApplicationFirewall(Firewall):
    """macOS application firewall; rules are per program rather than per port."""

    def exists(self, rule: FirewallRule) -> bool:
        if rule.program is None:
            return True
        result = self.runner.run([SOCKETFILTERFW, "--getappblocked", str(rule.program)])
        return result.ok and "permitted" in result.stdout.lower()

    def _add(self, rule: FirewallRule) -> CommandResult:
        added = self.runner.run([SOCKETFILTERFW, "--add", str(rule.program)])
        if not added.ok:
            return added
        return self.runner.run([SOCKETFILTERFW, "--unblockapp", str(rule.program)])

    def _delete(self, rule: FirewallRule) -> CommandResult:
        return self.runner.run([SOCKETFILTERFW, "--remove", str(rule.program)])


def select_firewall(
    system: str | None = None, *, runner: CommandRunner | None = None
) -> Firewall:
    """Return the firewall backend for ``system`` (defaults to the running OS)."""
    key = (system or platform.system()).strip().lower()
    if key == "windows":
        return NetshFirewall(runner=runner)
    if key == "darwin":
        return ApplicationFirewall(runner=runner)
    if shutil.which("ufw"):
        return UfwFirewall(runner=runner)
    return IptablesFirewall(runner=runner)


def rules_for(
    environment: str, ports: tuple[int, ...], program: Path | None = None
) -> list[FirewallRule]:
    """Return one rule per required port."""
    return [FirewallRule(rule_name(environment, port), port, program) for port in ports]


def provision_rules(firewall: Firewall, rules: list[FirewallRule]) -> list[StepWarning]:
    """Ensure every rule, turning failures into warnings."""
    warnings: list[StepWarning] = []
    for rule in rules:
        try:
            firewall.ensure(rule)
        except OSError as exc:
            LOGGER.warning(
                "Firewall rule not provisioned", extra={"rule": rule.name, "error": str(exc)}
            )
            warnings.append(StepWarning(step="firewall", message=str(exc)))
    return warnings


def remove_rules(firewall: Firewall, rules: list[FirewallRule]) -> list[StepWarning]:
    """Remove every rule, turning failures into warnings."""
    warnings: list[StepWarning] = []
    for rule in rules:
        try:
            firewall.remove(rule)
        except OSError as exc:
            warnings.append(StepWarning(step="firewall", message=str(exc)))
    return warnings
