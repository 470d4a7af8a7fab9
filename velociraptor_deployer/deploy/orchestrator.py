"""Deployment state machine: preflight, install, configure, provision, start, verify."""

from __future__ import annotations

import shutil
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from velociraptor_deployer.audit import DeploymentAuditLog
from velociraptor_deployer.backups import ConfigBackupStore
from velociraptor_deployer.configgen import ConfigGenerator, ConfigOverrides, ConfigResult
from velociraptor_deployer.deploy.firewall import (
    Firewall,
    provision_rules,
    remove_rules,
    rules_for,
    select_firewall,
)
from velociraptor_deployer.deploy.locking import DeploymentLock
from velociraptor_deployer.deploy.preflight import PreflightChecker
from velociraptor_deployer.deploy.profiles import EnvironmentProfile
from velociraptor_deployer.deploy.rollback import RollbackManager
from velociraptor_deployer.errors import (
    DeploymentError,
    ReadinessTimeout,
    StepWarning,
    TransportError,
)
from velociraptor_deployer.installer import ArtifactInstaller
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import (
    DeploymentRecord,
    DeploymentStatus,
    ProcessHandle,
    ReleaseAsset,
)
from velociraptor_deployer.principal import PrincipalProvisioner, generate_secret
from velociraptor_deployer.release import ReleaseResolver
from velociraptor_deployer.retry import RetryPolicy
from velociraptor_deployer.runner import CommandRunner
from velociraptor_deployer.services import ServiceManager, select_service_manager
from velociraptor_deployer.supervisor import ProcessSupervisor

LOGGER = get_logger("deploy.orchestrator")


@dataclass
class DeploymentContext:
    """State of one attempt, handed explicitly from stage to stage."""

    profile: EnvironmentProfile
    record: DeploymentRecord
    admin_secret: str
    asset: ReleaseAsset | None = None
    config_result: ConfigResult | None = None
    process: ProcessHandle | None = None
    service_was_running: bool = False
    standalone_was_running: ProcessHandle | None = None
    stopped_service: bool = False
    stopped_standalone: bool = False
    warnings: list[StepWarning] = field(default_factory=list)

    @property
    def config_written(self) -> bool:
        return self.config_result is not None


class DeploymentOrchestrator:
    """Drive one environment profile through the deployment pipeline.

    Collaborators are injectable; anything left unset is built with its
    production defaults. The service manager is chosen once, here.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        resolver: ReleaseResolver | None = None,
        installer: ArtifactInstaller | None = None,
        config_generator: ConfigGenerator | None = None,
        provisioner: PrincipalProvisioner | None = None,
        service_manager: ServiceManager | None = None,
        supervisor: ProcessSupervisor | None = None,
        preflight: PreflightChecker | None = None,
        firewall: Firewall | None = None,
        backups: ConfigBackupStore | None = None,
        rollback_manager: RollbackManager | None = None,
        audit_log: DeploymentAuditLog | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.backups = backups or ConfigBackupStore()
        self.service_manager = service_manager or select_service_manager(runner=self.runner)
        self.supervisor = supervisor or ProcessSupervisor()
        self.preflight = preflight or PreflightChecker()
        self.config_generator = config_generator or ConfigGenerator(
            runner=self.runner, backups=self.backups
        )
        self.provisioner = provisioner or PrincipalProvisioner(runner=self.runner)
        self.rollback_manager = rollback_manager or RollbackManager(
            backups=self.backups, service_manager=self.service_manager
        )
        self.audit_log = audit_log or DeploymentAuditLog()
        self.cancel_event = cancel_event or threading.Event()
        self._resolver = resolver
        self._installer = installer
        self._firewall = firewall
        self._retry_policy = retry_policy

    def deploy(
        self,
        profile: EnvironmentProfile,
        *,
        admin_secret: str | None = None,
    ) -> DeploymentRecord:
        """Run the full pipeline for ``profile`` and return the READY record.

        Any failure is recorded, cleaned up after (spawned processes are
        terminated; production profiles get one automatic rollback once the
        config has been written, or have a server stopped for the upgrade
        started again before that) and then re-raised with the final record
        attached as ``error.record``.
        """
        record = DeploymentRecord(
            environment=profile.name,
            config_path=profile.config_path,
            service_name=profile.service_name if profile.mode == "service" else None,
        )
        if admin_secret is None:
            admin_secret = generate_secret()
            LOGGER.info(
                "Generated an initial admin secret", extra={"environment": profile.name}
            )
        context = DeploymentContext(profile=profile, record=record, admin_secret=admin_secret)
        LOGGER.info(
            "Deploy requested",
            extra={
                "environment": profile.name,
                "mode": profile.mode,
                "install_dir": str(profile.install_dir),
                "production": profile.production,
            },
        )
        lock = DeploymentLock(profile.install_target.lock_path)
        try:
            self._advance(context, DeploymentStatus.PREFLIGHT)
            lock.acquire()
            self._preflight(context)
            self._download(context)
            self._configure(context)
            self._provision(context)
            self._start(context)
            self._verify(context)
            self._advance(context, DeploymentStatus.READY)
        except KeyboardInterrupt:
            self.cancel_event.set()
            self._terminate_process(context)
            raise
        except Exception as exc:
            error = exc if isinstance(exc, DeploymentError) else _wrap(exc, record)
            self._handle_failure(context, error)
            if error is exc:
                raise
            raise error from exc
        finally:
            lock.release()

        LOGGER.info(
            "Deploy succeeded",
            extra={"environment": profile.name, "url": record.url, "status": record.status.value},
        )
        return record

    def rollback(self, profile: EnvironmentProfile) -> DeploymentRecord:
        """Manually restore the latest config backup for ``profile`` and restart."""
        record = DeploymentRecord(
            environment=profile.name,
            config_path=profile.config_path,
            service_name=profile.service_name if profile.mode == "service" else None,
        )
        with DeploymentLock(profile.install_target.lock_path):
            backup = self.rollback_manager.rollback(record)
        record.advance(DeploymentStatus.ROLLED_BACK)
        self.audit_log.log(
            environment=profile.name,
            event="rollback",
            status=record.status.value,
            details={"backup": str(backup.backup_path), "trigger": "manual"},
        )
        return record

    def teardown(
        self, profile: EnvironmentProfile, *, remove_data: bool = False
    ) -> list[StepWarning]:
        """Stop and unregister the server, drop firewall rules and remove the binary.

        The config and its backups go too, together with the data directory,
        only when ``remove_data`` is set.
        """
        warnings: list[StepWarning] = []
        with DeploymentLock(profile.install_target.lock_path):
            status = self.service_manager.status(profile.service_name)
            if status.exists:
                if status.running:
                    self.service_manager.stop(profile.service_name)
                self.service_manager.uninstall(profile.service_name)

            handle = self.supervisor.handle_from_pid_file(profile.pid_file)
            if handle is not None:
                self.supervisor.terminate(handle)

            if profile.manage_firewall:
                rules = rules_for(profile.name, profile.required_ports, profile.binary_path)
                warnings.extend(remove_rules(self._firewall_for(profile), rules))

            profile.binary_path.unlink(missing_ok=True)
            if remove_data:
                config_path = profile.config_path
                for backup in self.backups.history(config_path, kind=None):
                    backup.backup_path.unlink(missing_ok=True)
                config_path.unlink(missing_ok=True)
                shutil.rmtree(profile.data_dir, ignore_errors=True)

        for warning in warnings:
            LOGGER.warning(warning.message, extra={"environment": profile.name})
        self.audit_log.log(
            environment=profile.name,
            event="teardown",
            status="ok" if not warnings else "warnings",
            details={"remove_data": remove_data, "warnings": [w.to_dict() for w in warnings]},
        )
        LOGGER.info("Teardown finished", extra={"environment": profile.name})
        return warnings

    def _preflight(self, context: DeploymentContext) -> None:
        profile = context.profile
        owned: tuple[int, ...] = ()
        if profile.mode == "service":
            status = self.service_manager.status(profile.service_name)
            if status.running:
                context.service_was_running = True
                owned = profile.required_ports
        else:
            handle = self.supervisor.handle_from_pid_file(profile.pid_file)
            if handle is not None and self.supervisor.is_alive(handle):
                context.standalone_was_running = handle
                owned = profile.required_ports
        self.preflight.check(profile, owned_ports=owned)

    def _download(self, context: DeploymentContext) -> None:
        self._advance(context, DeploymentStatus.DOWNLOADING)
        profile = context.profile
        target = profile.install_target
        target.install_dir.mkdir(parents=True, exist_ok=True)
        target.data_dir.mkdir(parents=True, exist_ok=True)

        installer = self._installer_for(profile)
        if not installer.needs_install(target.binary_path, profile.force_download):
            LOGGER.info(
                "Binary present; release lookup skipped",
                extra={"environment": profile.name, "path": str(target.binary_path)},
            )
            return

        resolver = self._resolver or ReleaseResolver(feed_url=profile.feed_url)
        asset = self._retry_policy_for(profile).call(
            lambda: resolver.resolve(profile.repo_id, profile.platform, profile.arch),
            retry_on=(TransportError,),
            label="Release lookup",
            cancel_event=self.cancel_event,
        )
        context.asset = asset
        context.record.asset = asset

        # A running binary cannot be replaced on every platform.
        if context.service_was_running:
            self.service_manager.stop(profile.service_name)
            context.stopped_service = True
        if context.standalone_was_running is not None:
            self.supervisor.terminate(context.standalone_was_running)
            context.standalone_was_running = None
            context.stopped_standalone = True

        result = installer.install(asset, target.binary_path, force=profile.force_download)
        self._add_warnings(context, result.warnings)

    def _configure(self, context: DeploymentContext) -> None:
        self._advance(context, DeploymentStatus.CONFIGURING)
        profile = context.profile
        service_config = profile.service_config
        service_config.datastore_path.mkdir(parents=True, exist_ok=True)
        service_config.filestore_path.mkdir(parents=True, exist_ok=True)
        context.config_result = self.config_generator.generate(
            profile.binary_path,
            profile.config_path,
            ConfigOverrides.from_service_config(service_config),
            reuse_existing=not profile.regenerate_config,
        )

    def _provision(self, context: DeploymentContext) -> None:
        self._advance(context, DeploymentStatus.PROVISIONING)
        profile = context.profile
        result = self.provisioner.create_admin_principal(
            profile.binary_path,
            profile.config_path,
            profile.admin_username,
            context.admin_secret,
        )
        if result.warning is not None:
            self._add_warnings(context, (result.warning,))

    def _start(self, context: DeploymentContext) -> None:
        self._advance(context, DeploymentStatus.SERVICE_STARTING)
        profile = context.profile
        if profile.manage_firewall:
            rules = rules_for(profile.name, profile.required_ports, profile.binary_path)
            self._add_warnings(context, provision_rules(self._firewall_for(profile), rules))

        if profile.mode == "standalone":
            if context.standalone_was_running is not None:
                self.supervisor.terminate(context.standalone_was_running)
                context.standalone_was_running = None
            context.process = self._launch_standalone(profile)
            return

        manager = self.service_manager
        descriptor = manager.descriptor(
            profile.service_name,
            run_as_user=profile.run_as_user,
            working_directory=profile.install_dir,
            writable_paths=(profile.data_dir,),
            log_directory=profile.log_dir,
        )
        manager.install(
            descriptor,
            profile.binary_path,
            profile.config_path,
            auto_start=profile.auto_start,
        )
        if context.service_was_running:
            manager.restart(profile.service_name)
        elif not profile.auto_start:
            manager.start(profile.service_name)

    def _verify(self, context: DeploymentContext) -> None:
        self._advance(context, DeploymentStatus.VERIFYING)
        profile = context.profile
        host = profile.gui_host
        result = self.supervisor.wait_for_readiness(
            profile.gui_port,
            profile.readiness_timeout_seconds,
            host=host,
            cancel_event=self.cancel_event,
        )
        if not result.ready:
            raise ReadinessTimeout(
                f"{result.url} did not become ready within "
                f"{profile.readiness_timeout_seconds}s.",
                stage=DeploymentStatus.VERIFYING.value,
            )
        context.record.url = profile.gui_url(host)

    def _handle_failure(self, context: DeploymentContext, error: DeploymentError) -> None:
        record = context.record
        profile = context.profile
        stage = record.status.value
        if error.stage is None:
            error.stage = stage
        record.add_error(stage, error)
        LOGGER.error(
            "Deployment stage failed",
            extra={"environment": profile.name, "stage": stage, "error": str(error)},
        )
        self.audit_log.log(
            environment=profile.name,
            event="failure",
            status=stage,
            level="ERROR",
            details={"error": str(error), "type": type(error).__name__},
        )
        self._terminate_process(context)

        final_status = DeploymentStatus.FAILED
        if profile.production:
            if context.config_written:
                final_status = self._attempt_rollback(context)
            else:
                self._resume_previous(context)
        if not record.status.terminal:
            record.advance(final_status)
        self.audit_log.log(
            environment=profile.name, event="transition", status=record.status.value
        )
        error.record = record

    def _attempt_rollback(self, context: DeploymentContext) -> DeploymentStatus:
        record = context.record
        try:
            backup = self.rollback_manager.rollback(record)
        except (DeploymentError, OSError) as exc:
            record.add_error("ROLLBACK", exc)
            LOGGER.error(
                "Automatic rollback failed",
                extra={"environment": record.environment, "error": str(exc)},
            )
            self.audit_log.log(
                environment=record.environment,
                event="rollback",
                status="failed",
                level="ERROR",
                details={"error": str(exc)},
            )
            return DeploymentStatus.FAILED
        self.audit_log.log(
            environment=record.environment,
            event="rollback",
            status="ok",
            details={"backup": str(backup.backup_path), "trigger": "automatic"},
        )
        return DeploymentStatus.ROLLED_BACK

    def _resume_previous(self, context: DeploymentContext) -> None:
        """Bring back a server stopped for an upgrade that failed before its config changed."""
        profile = context.profile
        if not (context.stopped_service or context.stopped_standalone):
            return
        try:
            if context.stopped_service:
                self.service_manager.start(profile.service_name)
            else:
                handle = self._launch_standalone(profile)
                LOGGER.info("Previous process relaunched", extra={"pid": handle.pid})
        except (DeploymentError, OSError) as exc:
            context.record.add_error("RESUME", exc)
            LOGGER.error(
                "Could not restart the previous server",
                extra={"environment": profile.name, "error": str(exc)},
            )
            self.audit_log.log(
                environment=profile.name,
                event="resume",
                status="failed",
                level="ERROR",
                details={"error": str(exc)},
            )
            return
        self.audit_log.log(environment=profile.name, event="resume", status="ok")

    def _launch_standalone(self, profile: EnvironmentProfile) -> ProcessHandle:
        return self.supervisor.start(
            profile.binary_path,
            ["--config", str(profile.config_path), "frontend"],
            log_path=profile.log_dir / "velociraptor.log",
            pid_file=profile.pid_file,
        )

    def _terminate_process(self, context: DeploymentContext) -> None:
        if context.process is None:
            return
        try:
            self.supervisor.terminate(context.process)
        except OSError as exc:
            context.record.add_error("CLEANUP", exc)
            LOGGER.error("Could not terminate process", extra={"pid": context.process.pid})
        context.process = None

    def _advance(self, context: DeploymentContext, status: DeploymentStatus) -> None:
        context.record.advance(status)
        LOGGER.info(
            "Deployment status changed",
            extra={"environment": context.profile.name, "status": status.value},
        )
        self.audit_log.log(
            environment=context.profile.name, event="transition", status=status.value
        )

    def _add_warnings(self, context: DeploymentContext, warnings: Iterable[StepWarning]) -> None:
        for warning in warnings:
            context.record.add_warning(warning)
            context.warnings.append(warning)
            self.audit_log.log(
                environment=context.profile.name,
                event="warning",
                status=context.record.status.value,
                level="WARNING",
                details=warning.to_dict(),
            )

    def _installer_for(self, profile: EnvironmentProfile) -> ArtifactInstaller:
        if self._installer is not None:
            return self._installer
        return ArtifactInstaller(
            runner=self.runner,
            retry_policy=self._retry_policy_for(profile),
            cancel_event=self.cancel_event,
        )

    def _retry_policy_for(self, profile: EnvironmentProfile) -> RetryPolicy:
        return self._retry_policy or RetryPolicy(max_attempts=profile.download_attempts)

    def _firewall_for(self, profile: EnvironmentProfile) -> Firewall:
        if self._firewall is None:
            self._firewall = select_firewall(profile.platform, runner=self.runner)
        return self._firewall


def _wrap(exc: Exception, record: DeploymentRecord) -> DeploymentError:
    """Give an unexpected exception the taxonomy base type and current stage."""
    return DeploymentError(f"{type(exc).__name__}: {exc}", stage=record.status.value)
