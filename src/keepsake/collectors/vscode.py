"""
VS Code extension inventory source.

Collects `code --list-extensions` (one extension id per line) and restores
it with `code --install-extension` on a bounded pool. Installs are small,
so the pool is wider than the package install pool.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from keepsake.archive.codec import ArchiveMember, unpack
from keepsake.collectors.base import (
    CollectorError,
    RestoreContext,
    RestoreOutcome,
    SourceItem,
    SpecialSource,
    StrategyRegistry,
)
from keepsake.concurrency import run_bounded
from keepsake.storage.models import SYNTHETIC_KEYS, SourceKind
from keepsake.system.tools import ToolError

INVENTORY_FILE = "vscode_extensions.txt"


def parse_extensions(text: str) -> list[str]:
    """Extension ids, one per line, ignoring blanks and comments."""
    return [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


@StrategyRegistry.register
class VSCodeSource(SpecialSource):
    """Strategy for the VS Code extension inventory."""

    kind = SourceKind.EXTENSION_INVENTORY
    name = "vscode"
    required_tool = "code"

    def is_enabled(self) -> bool:
        return self.settings.sources.vscode

    def collect(self, staging_dir: Path, home: Path) -> SourceItem | None:
        if not self.tools.available("code"):
            self.logger.info("VS Code command line tool not found, skipping extensions")
            return None

        try:
            result = self.tools.run(["code", "--list-extensions"], timeout=120)
        except ToolError as e:
            raise CollectorError(e.message, source=self.name) from e
        if not result.ok:
            raise CollectorError(
                f"code --list-extensions failed: {result.stderr.strip()}", source=self.name
            )

        extensions = parse_extensions(result.stdout)
        if not extensions:
            self.logger.info("No VS Code extensions installed")
            return None

        inventory = Path(staging_dir) / INVENTORY_FILE
        inventory.write_text("\n".join(extensions) + "\n", encoding="utf-8")
        return SourceItem(
            kind=self.kind,
            logical_path=SYNTHETIC_KEYS[self.kind],
            members=[ArchiveMember(inventory, INVENTORY_FILE)],
            size_hint=inventory.stat().st_size,
            archive_base=SYNTHETIC_KEYS[self.kind],
            inventory=[inventory],
        )

    def restore(self, context: RestoreContext) -> RestoreOutcome:
        if not self.tools.available("code"):
            raise CollectorError(
                "VS Code command line tool 'code' not found", source=self.name
            )

        with tempfile.TemporaryDirectory(prefix="keepsake-vscode-") as temp_dir:
            unpack(context.archive_path, Path(temp_dir), overwrite=True)
            inventory = Path(temp_dir) / INVENTORY_FILE
            if not inventory.is_file():
                raise CollectorError("Archive has no extension inventory", source=self.name)
            extensions = parse_extensions(inventory.read_text(encoding="utf-8"))

        def install(extension: str) -> str:
            args = ["code", "--install-extension", extension]
            if context.overwrite:
                args.append("--force")
            result = self.tools.run(args, timeout=300)
            if not result.ok:
                raise CollectorError(
                    (result.stderr or result.stdout).strip() or "install failed",
                    source=self.name,
                )
            return extension

        def report(outcome) -> None:
            if outcome.ok:
                context.log(f"Installed extension {outcome.item}")
            else:
                context.log(f"Failed to install extension {outcome.item}: {outcome.error}")

        outcomes = run_bounded(
            install, extensions, self.settings.workers.extension_install, on_complete=report
        )
        installed = [o.item for o in outcomes if o.ok]
        failed = {o.item: getattr(o.error, "message", str(o.error)) for o in outcomes if not o.ok}

        if extensions and not installed:
            raise CollectorError(
                f"0 of {len(extensions)} VS Code extensions installed",
                source=self.name,
                paths=sorted(failed),
            )

        message = f"Installed {len(installed)} of {len(extensions)} VS Code extensions"
        if failed:
            message += f", {len(failed)} failed"
        return RestoreOutcome(
            message=message,
            details={"installed": installed, "failed": failed},
        )
