"""
chittydna Core - the assembled learning system.

``LearningCore`` builds every service once, from one config and one
storage port, and hands the same instances to each other. Nothing here
is global: two cores over two storages are fully independent.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from chittydna.audit import AuditLog
from chittydna.config import ChittyDNAConfig, load_config
from chittydna.crypto import SigningKeyManager
from chittydna.events import capture_context
from chittydna.goals import GoalStore, GoalSynthesizer
from chittydna.pipeline import LearningPipeline
from chittydna.portability import Portability
from chittydna.proposals import ProposalStore
from chittydna.protocols import Clock, RemoteServices, StoragePort
from chittydna.storage import FileStorage
from chittydna.sync import HttpRemoteServices, SyncClient
from chittydna.types import utc_now
from chittydna.vault import Vault

logger = logging.getLogger(__name__)


class LearningCore:
    """The service graph for one learning vault.

    Args:
        config: Settings; loaded with ``load_config()`` when omitted.
        storage: Storage port; a ``FileStorage`` over ``config.data_dir``
            when omitted.
        remote: Remote services; an ``HttpRemoteServices`` is built when
            the config carries an auth token, otherwise sync runs offline.
        clock: Time source shared by every service.
        capture_context: Capture cwd/git/project context for observed
            events that arrive without one.
        log_dir: Data directory for vault event logs. Defaults to
            ``config.data_dir`` for file storage and to None otherwise.
    """

    def __init__(
        self,
        config: Optional[ChittyDNAConfig] = None,
        storage: Optional[StoragePort] = None,
        remote: Optional[RemoteServices] = None,
        clock: Clock = utc_now,
        capture_context: bool = True,
        log_dir: Optional[Path] = None,
    ):
        self.config = config or load_config()
        self.clock = clock
        if storage is None:
            storage = FileStorage(self.config.data_dir)
            if log_dir is None:
                log_dir = Path(self.config.data_dir)
        self.storage = storage
        self.log_dir = log_dir

        self.audit = AuditLog(storage, clock=clock)
        self.vault = Vault(
            storage,
            audit=self.audit,
            clock=clock,
            snapshot_cap=self.config.snapshot_cap,
            log_dir=log_dir,
        )
        self.goals = GoalStore(storage, clock=clock)
        self.synthesizer = GoalSynthesizer(
            self.goals,
            clock=clock,
            link_threshold=self.config.link_threshold,
            merge_threshold=self.config.merge_threshold,
            stale_days=self.config.stale_days,
        )
        self.proposals = ProposalStore(storage, clock=clock)
        self.signer = SigningKeyManager(storage)
        self.portability = Portability(
            self.vault,
            self.audit,
            signer=self.signer,
            clock=clock,
            export_interval=timedelta(hours=self.config.export_interval_hours),
            log_dir=log_dir,
        )

        if remote is None and self.config.auth_token:
            remote = HttpRemoteServices(
                services=self.config.services,
                token=self.config.auth_token,
                timeout=self.config.remote_timeout,
                health_timeout=self.config.health_timeout,
                clock=clock,
            )
        self.remote = remote
        self.sync_client = SyncClient(storage, remote=remote, clock=clock, log_dir=log_dir)

        self.pipeline = LearningPipeline(
            storage,
            self.vault,
            self.audit,
            self.goals,
            self.synthesizer,
            self.proposals,
            sync_client=self.sync_client,
            config=self.config,
            clock=clock,
            context_provider=self._context if capture_context else None,
        )
        logger.debug(f"LearningCore ready (remote={'on' if remote else 'off'})")

    def _context(self):
        return capture_context(
            learning_goal_ids=[g.id for g in self.synthesizer.prioritize_goals()]
        )

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs) -> "LearningCore":
        return cls(config=load_config(path), **kwargs)

    def close(self) -> None:
        """Stop the phase worker and release HTTP connections."""
        self.pipeline.shutdown()
        close = getattr(self.remote, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "LearningCore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
