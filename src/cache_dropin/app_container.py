import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from cache_dropin.config import Config, load_config
from cache_dropin.domain.dropin import CacheHandle, Principal, Status
from cache_dropin.dropin.header import defines_cache_api
from cache_dropin.services.access_control import AccessController, CapabilityOverride, parse_principals
from cache_dropin.services.action_dispatcher import ActionDispatcher
from cache_dropin.services.audit_log import DropinAuditLog
from cache_dropin.services.cache_handle import build_cache_handle
from cache_dropin.services.dropin_installer import DropinInstaller, DropinListener
from cache_dropin.services.filesystem_probe import Connector, FilesystemProbe
from cache_dropin.services.notices import NoticeStore
from cache_dropin.services.scheduled_tasks import DISCARD_METRICS_HOOK, JsonScheduleStore, ScheduledTaskManager
from cache_dropin.services.status_resolver import DropinValidator, StatusResolver
from cache_dropin.services.tokens import ActionTokenService

logger = logging.getLogger(__name__)


@dataclass
class DropinContainer:
    """Everything built once at startup and shared by reference."""

    config: Config
    cache: CacheHandle
    resolver: StatusResolver
    access: AccessController
    tokens: ActionTokenService
    notices: NoticeStore
    scheduler: ScheduledTaskManager
    audit: DropinAuditLog
    dispatcher: ActionDispatcher
    principals: Dict[str, Principal] = field(default_factory=dict)
    connector: Optional[Connector] = None
    listeners: List[DropinListener] = field(default_factory=list)

    def new_probe(self, submitted: Optional[Mapping[str, str]] = None) -> FilesystemProbe:
        return FilesystemProbe(self.config, submitted=submitted, connector=self.connector)

    def new_installer(self, probe: FilesystemProbe) -> DropinInstaller:
        return DropinInstaller(
            self.config,
            probe,
            self.cache,
            resolver=self.resolver,
            listeners=self.listeners,
        )

    def dropin_loaded(self) -> bool:
        return self.resolver.resolve() in (Status.ACTIVE, Status.OUTDATED)

    def on_admin_request(self) -> None:
        """Per-request housekeeping for administrative requests."""
        with self.new_probe() as probe:
            result = self.new_installer(probe).maybe_auto_update()
        if result is not None and not result.success:
            logger.warning("drop-in auto-update failed: %s", result.error_kind)
        self.scheduler.reconcile(dropin_active=self.dropin_loaded(), is_administrative_context=True)

    def on_deactivation(self) -> None:
        self.scheduler.reconcile(dropin_active=False, is_administrative_context=True, deactivating=True)
        with self.new_probe() as probe:
            result = self.new_installer(probe).teardown_on_deactivation()
        if result is not None and not result.success:
            logger.warning("drop-in removal on deactivation failed: %s", result.error_kind)


def build_container(
    config: Optional[Config] = None,
    config_dir: Optional[Path] = None,
    cache: Optional[CacheHandle] = None,
    connector: Optional[Connector] = None,
    validator: Optional[DropinValidator] = None,
    capability_override: Optional[CapabilityOverride] = None,
    listeners: Optional[List[DropinListener]] = None,
) -> DropinContainer:
    if config is None:
        config = load_config(config_dir or Path.cwd())
    if config.bundled_path.exists() and not defines_cache_api(config.bundled_path):
        logger.warning(
            "bundled drop-in %s declares no cache functions; set CACHE_DROPIN_PLUGIN_DIR to the full drop-in before enabling",
            config.bundled_path,
        )
    cache = cache if cache is not None else build_cache_handle(config.redis_url)
    resolver = StatusResolver(config, cache, validator=validator)
    access = AccessController(config.manager_capability, multisite=config.multisite, override=capability_override)
    tokens = ActionTokenService(config.secret_key)
    notices = NoticeStore(state_dir=config.state_dir)
    scheduler = ScheduledTaskManager(JsonScheduleStore(state_dir=config.state_dir))
    audit = DropinAuditLog(state_dir=config.state_dir)
    extra_listeners = list(listeners or [])

    def probe_factory(submitted: Mapping[str, str]) -> FilesystemProbe:
        return FilesystemProbe(config, submitted=submitted, connector=connector)

    def installer_factory(probe: FilesystemProbe) -> DropinInstaller:
        return DropinInstaller(config, probe, cache, resolver=resolver, listeners=extra_listeners)

    dispatcher = ActionDispatcher(
        config=config,
        cache=cache,
        tokens=tokens,
        access=access,
        notices=notices,
        scheduler=scheduler,
        resolver=resolver,
        probe_factory=probe_factory,
        installer_factory=installer_factory,
        audit=audit,
    )
    scheduler.register_handler(DISCARD_METRICS_HOOK, lambda: cache.discard_metrics(config.metrics_max_time))
    return DropinContainer(
        config=config,
        cache=cache,
        resolver=resolver,
        access=access,
        tokens=tokens,
        notices=notices,
        scheduler=scheduler,
        audit=audit,
        dispatcher=dispatcher,
        principals=parse_principals(config.principals),
        connector=connector,
        listeners=extra_listeners,
    )
