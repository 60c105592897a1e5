"""OpenTofu actions for rendered repository workspaces.

Each action shells out to the engine binary inside an isolated workspace:

    .states/{manifest}/
        work/               rendered main.tf.json, copied templates, lockfile
        data/               TF_DATA_DIR (provider plugins)
        terraform.tfstate   engine state (owned by the engine)
        tfplan              last saved plan

Engine failures are reported verbatim; nothing is retried here.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import ActionResult, run_command
from config import SiteConfig, get_base_dir
from provisioner.state import STATES_DIRNAME

logger = logging.getLogger(__name__)

# plan -detailed-exitcode: 0 = no changes, 1 = error, 2 = changes present
PLAN_NO_CHANGES = 0
PLAN_HAS_CHANGES = 2


@dataclass
class TofuWorkspace:
    """Per-manifest engine workspace layout."""
    root: Path

    @classmethod
    def for_manifest(cls, manifest_name: str) -> 'TofuWorkspace':
        return cls(root=get_base_dir() / STATES_DIRNAME / manifest_name)

    @property
    def work_dir(self) -> Path:
        return self.root / 'work'

    @property
    def data_dir(self) -> Path:
        # TF_DATA_DIR must NOT hold terraform.tfstate, otherwise the engine's
        # legacy code path picks it up instead of -state.
        return self.root / 'data'

    @property
    def state_file(self) -> Path:
        return self.root / 'terraform.tfstate'

    @property
    def plan_file(self) -> Path:
        return self.root / 'tfplan'

    @property
    def lockfile(self) -> Path:
        # init writes the lockfile into the root module, not TF_DATA_DIR
        return self.work_dir / '.terraform.lock.hcl'

    def prepare(self) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def env(self, base_env: dict) -> dict:
        return {**base_env, 'TF_DATA_DIR': str(self.data_dir)}


def _normalize_actions(actions: list[str]) -> str:
    """Collapse an engine action list into a single action name."""
    if set(actions) == {'create', 'delete'}:
        return 'replace'
    if not actions:
        return 'no-op'
    return actions[0]


@dataclass
class PlanSummary:
    """Planned changes keyed by resource address."""
    changes: dict[str, str] = field(default_factory=dict)

    @property
    def add(self) -> int:
        return sum(1 for a in self.changes.values() if a in ('create', 'replace'))

    @property
    def change(self) -> int:
        return sum(1 for a in self.changes.values() if a == 'update')

    @property
    def destroy(self) -> int:
        return sum(1 for a in self.changes.values() if a in ('delete', 'replace'))

    @property
    def has_changes(self) -> bool:
        return any(a not in ('no-op', 'read') for a in self.changes.values())

    def pending(self) -> dict[str, str]:
        """Only the addresses that would change."""
        return {addr: a for addr, a in self.changes.items() if a not in ('no-op', 'read')}

    def to_dict(self) -> dict:
        return {
            'add': self.add,
            'change': self.change,
            'destroy': self.destroy,
            'changes': self.pending(),
        }

    @classmethod
    def from_plan_json(cls, data: dict) -> 'PlanSummary':
        """Build from `show -json <planfile>` output."""
        changes = {}
        for rc in data.get('resource_changes', []) or []:
            address = rc.get('address')
            if not address:
                continue
            changes[address] = _normalize_actions(rc.get('change', {}).get('actions', []))
        return cls(changes=changes)


@dataclass
class ApplyOutcome:
    """Per-resource results parsed from machine-readable apply output."""
    completed: dict[str, str] = field(default_factory=dict)
    errored: dict[str, str] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)
    change_summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'completed': dict(self.completed),
            'errored': dict(self.errored),
            'change_summary': dict(self.change_summary),
        }


def parse_apply_events(stdout: str) -> ApplyOutcome:
    """Parse `apply -json` / `destroy -json` streamed log lines.

    Non-JSON lines are ignored.
    """
    outcome = ApplyOutcome()
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith('{'):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue

        kind = event.get('type')
        hook = event.get('hook') or {}
        addr = (hook.get('resource') or {}).get('addr')

        if kind == 'apply_complete' and addr:
            outcome.completed[addr] = hook.get('action', 'update')
        elif kind == 'apply_errored' and addr:
            outcome.errored[addr] = hook.get('action', 'update')
        elif kind == 'change_summary':
            outcome.change_summary = dict(event.get('changes') or {})
        elif kind == 'diagnostic':
            diag = event.get('diagnostic') or {}
            if diag.get('severity') == 'error':
                text = diag.get('summary', '')
                if diag.get('detail'):
                    text = f"{text}: {diag['detail']}"
                outcome.diagnostics.append(text)
    return outcome


def _failure_message(verb: str, err: str, diagnostics: Optional[list[str]] = None) -> str:
    detail = '; '.join(diagnostics) if diagnostics else err.strip()
    return f"tofu {verb} failed: {detail}"


def _common_flags(workspace: TofuWorkspace, parallelism: Optional[int], lock_timeout: Optional[str]) -> list[str]:
    flags = ['-input=false', '-no-color', f'-state={workspace.state_file}']
    if parallelism:
        flags.append(f'-parallelism={parallelism}')
    if lock_timeout:
        flags.append(f'-lock-timeout={lock_timeout}')
    return flags


@dataclass
class TofuInitAction:
    """Run tofu init in the workspace."""
    name: str
    workspace: TofuWorkspace
    env: dict = field(default_factory=dict, repr=False)
    timeout: Optional[int] = None

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        start = time.time()
        self.workspace.prepare()
        logger.info(f"[{self.name}] Running tofu init...")
        rc, _, err = run_command(
            [config.tofu_binary, 'init', '-input=false', '-no-color'],
            cwd=self.workspace.work_dir,
            timeout=self.timeout or config.timeout_init,
            env=self.workspace.env(self.env),
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=_failure_message('init', err),
                duration=time.time() - start,
                returncode=rc,
            )
        return ActionResult(
            success=True,
            message='tofu init completed',
            duration=time.time() - start,
        )


@dataclass
class TofuPlanAction:
    """Run tofu plan with a saved plan file and summarize the changes.

    Context updates:
        plan: PlanSummary.to_dict()
        converged: True when the engine reports no changes
    """
    name: str
    workspace: TofuWorkspace
    env: dict = field(default_factory=dict, repr=False)
    destroy: bool = False
    parallelism: Optional[int] = None
    lock_timeout: Optional[str] = None
    timeout: Optional[int] = None

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        start = time.time()
        env = self.workspace.env(self.env)
        timeout = self.timeout or config.timeout_plan

        cmd = [config.tofu_binary, 'plan', '-detailed-exitcode',
               f'-out={self.workspace.plan_file}']
        cmd += _common_flags(self.workspace, self.parallelism, self.lock_timeout)
        if self.destroy:
            cmd.append('-destroy')

        logger.info(f"[{self.name}] Running tofu plan{' -destroy' if self.destroy else ''}...")
        rc, _, err = run_command(cmd, cwd=self.workspace.work_dir, timeout=timeout, env=env)
        if rc not in (PLAN_NO_CHANGES, PLAN_HAS_CHANGES):
            return ActionResult(
                success=False,
                message=_failure_message('plan', err),
                duration=time.time() - start,
                returncode=rc,
            )

        rc_show, out, err = run_command(
            [config.tofu_binary, 'show', '-json', '-no-color', str(self.workspace.plan_file)],
            cwd=self.workspace.work_dir, timeout=timeout, env=env,
        )
        if rc_show != 0:
            return ActionResult(
                success=False,
                message=_failure_message('show', err),
                duration=time.time() - start,
                returncode=rc_show,
            )
        try:
            summary = PlanSummary.from_plan_json(json.loads(out))
        except json.JSONDecodeError as e:
            return ActionResult(
                success=False,
                message=f"Cannot parse plan JSON: {e}",
                duration=time.time() - start,
            )

        converged = rc == PLAN_NO_CHANGES
        logger.info(
            f"[{self.name}] Plan: {summary.add} to add, {summary.change} to change, "
            f"{summary.destroy} to destroy"
        )
        return ActionResult(
            success=True,
            message='No changes' if converged else f"{len(summary.pending())} resource(s) to change",
            duration=time.time() - start,
            context_updates={'plan': summary.to_dict(), 'converged': converged},
            returncode=rc,
        )


@dataclass
class TofuApplyAction:
    """Run tofu apply and record per-resource outcomes.

    Context updates:
        apply: ApplyOutcome.to_dict()
    """
    name: str
    workspace: TofuWorkspace
    env: dict = field(default_factory=dict, repr=False)
    parallelism: Optional[int] = None
    lock_timeout: Optional[str] = None
    timeout: Optional[int] = None

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        start = time.time()
        cmd = [config.tofu_binary, 'apply', '-auto-approve', '-json']
        cmd += _common_flags(self.workspace, self.parallelism, self.lock_timeout)

        logger.info(f"[{self.name}] Running tofu apply (state: {self.workspace.state_file})...")
        rc, out, err = run_command(
            cmd,
            cwd=self.workspace.work_dir,
            timeout=self.timeout or config.timeout_apply,
            env=self.workspace.env(self.env),
        )
        outcome = parse_apply_events(out)
        for addr, action in outcome.completed.items():
            logger.debug(f"[{self.name}] {addr}: {action} complete")

        if rc != 0:
            return ActionResult(
                success=False,
                message=_failure_message('apply', err, outcome.diagnostics),
                duration=time.time() - start,
                context_updates={'apply': outcome.to_dict()},
                returncode=rc,
            )
        return ActionResult(
            success=True,
            message=f"tofu apply completed ({len(outcome.completed)} resource(s) changed)",
            duration=time.time() - start,
            context_updates={'apply': outcome.to_dict()},
        )


@dataclass
class TofuDestroyAction:
    """Run tofu destroy for the workspace.

    Succeeds without invoking the engine when no state file exists.
    """
    name: str
    workspace: TofuWorkspace
    env: dict = field(default_factory=dict, repr=False)
    parallelism: Optional[int] = None
    lock_timeout: Optional[str] = None
    timeout: Optional[int] = None

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        start = time.time()
        if not self.workspace.state_file.exists():
            return ActionResult(
                success=True,
                message=f"No state file at {self.workspace.state_file}, nothing to destroy",
                duration=time.time() - start,
                context_updates={'destroy': ApplyOutcome().to_dict()},
            )

        cmd = [config.tofu_binary, 'destroy', '-auto-approve', '-json']
        cmd += _common_flags(self.workspace, self.parallelism, self.lock_timeout)

        logger.info(f"[{self.name}] Running tofu destroy (state: {self.workspace.state_file})...")
        rc, out, err = run_command(
            cmd,
            cwd=self.workspace.work_dir,
            timeout=self.timeout or config.timeout_apply,
            env=self.workspace.env(self.env),
        )
        outcome = parse_apply_events(out)
        if rc != 0:
            return ActionResult(
                success=False,
                message=_failure_message('destroy', err, outcome.diagnostics),
                duration=time.time() - start,
                context_updates={'destroy': outcome.to_dict()},
                returncode=rc,
            )
        return ActionResult(
            success=True,
            message=f"tofu destroy completed ({len(outcome.completed)} resource(s) removed)",
            duration=time.time() - start,
            context_updates={'destroy': outcome.to_dict()},
        )


@dataclass
class TofuOutputAction:
    """Read non-sensitive outputs from the workspace state.

    Context updates:
        outputs: {name: value}
    """
    name: str
    workspace: TofuWorkspace
    env: dict = field(default_factory=dict, repr=False)
    timeout: int = 60

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        start = time.time()
        rc, out, err = run_command(
            [config.tofu_binary, 'output', '-json', '-no-color', f'-state={self.workspace.state_file}'],
            cwd=self.workspace.work_dir,
            timeout=self.timeout,
            env=self.workspace.env(self.env),
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=_failure_message('output', err),
                duration=time.time() - start,
                returncode=rc,
            )
        try:
            raw: dict[str, Any] = json.loads(out) if out.strip() else {}
        except json.JSONDecodeError as e:
            return ActionResult(
                success=False,
                message=f"Cannot parse output JSON: {e}",
                duration=time.time() - start,
            )
        outputs = {
            name: entry.get('value')
            for name, entry in raw.items()
            if not entry.get('sensitive')
        }
        return ActionResult(
            success=True,
            message=f"Read {len(outputs)} output(s)",
            duration=time.time() - start,
            context_updates={'outputs': outputs},
        )
