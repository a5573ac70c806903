"""GitMC - Version control and sync engine for Minecraft world saves.

This package provides:
    - A lossless NBT codec (binary <-> canonical text) with region split/join
    - Canonical snapshots of a save folder that diff cleanly under git
    - A git orchestrator (commit, fetch, pull, push, branches, remotes)
    - Save state tracking (Clear / Modified / Conflict, ahead/behind counts)
    - A persistent registry of managed saves with a cancellable command surface

Package Structure:
    app: Command line entry point
    config: Configuration management, paths, schemas, and security
    core: Codec, snapshotter, git orchestration, state tracking and registry

Quick Start:
    Run from command line::

        python -m gitmc add ~/.minecraft/saves/MyWorld
        python -m gitmc commit MyWorld_20260101_120000 -m "First snapshot"

    Or programmatically::

        from gitmc.core import SaveSyncService
        with SaveSyncService.from_configuration() as service:
            info = service.register(path)

Configuration:
    - Config file: ~/.gitmc/configuration.xml (override with GITMC_HOME)
    - Log file: ~/.gitmc/gitmc.log
    - Registry: ~/.gitmc/registry.xml
    - Working trees: ~/.gitmc/trees/<save id>
"""

__version__ = "0.4.0"
__app_name__ = "GitMC"
