"""Lifecycle executor for repository manifests.

Renders the manifest into its workspace and drives the engine through
plan/apply/destroy. Ordering between resources is left to the engine;
the resource graph is used for dry-run previews and to seed the
per-resource execution state.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from actions.tofu import (
    TofuApplyAction,
    TofuDestroyAction,
    TofuInitAction,
    TofuOutputAction,
    TofuPlanAction,
    TofuWorkspace,
)
from common import ActionResult
from config import ConfigError, SiteConfig, build_engine_env
from manifest import Manifest
from provisioner.graph import ResourceGraph
from provisioner.render import render_resources, write_workspace
from provisioner.state import ExecutionState
from reporting.report import RunReport

logger = logging.getLogger(__name__)


@runtime_checkable
class ActionRunner(Protocol):
    """Protocol for action classes that implement run()."""

    def run(self, config: SiteConfig, context: dict) -> ActionResult:
        """Execute the action."""


@dataclass
class ProvisionExecutor:
    """Executes lifecycle verbs for a manifest.

    Attributes:
        manifest: The manifest defining the repository
        config: Site configuration (engine binary, timeouts, secrets)
        dry_run: If True, preview operations without invoking the engine
        report: Optional run report receiving one phase per engine step
        workspace: Engine workspace (default: .states/{manifest})
    """
    manifest: Manifest
    config: SiteConfig
    dry_run: bool = False
    report: Optional[RunReport] = None
    workspace: Optional[TofuWorkspace] = None
    graph: ResourceGraph = field(init=False, repr=False)
    _env: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.graph = ResourceGraph(render_resources(self.manifest))
        if self.workspace is None:
            self.workspace = TofuWorkspace.for_manifest(self.manifest.name)
        self._env = build_engine_env(
            self.config,
            [v.name for v in self.manifest.variables],
            self.manifest.provider.token_variable,
        )

    def _new_state(self, verb: str) -> ExecutionState:
        state = ExecutionState(self.manifest.name, verb)
        for node in self.graph.create_order():
            state.add_resource(node.address)
        state.start()
        return state

    def _finish(self, state: ExecutionState) -> None:
        state.finish()
        assert self.workspace is not None
        state.save(self.workspace.root / 'execution.json')

    def _record(self, phase: str, result: ActionResult) -> None:
        if self.report is not None:
            self.report.record(phase, result)
        if not result.success:
            logger.error(f"[{phase}] {result.message}")

    def _run(self, phase: str, action: ActionRunner, context: dict) -> ActionResult:
        result = action.run(self.config, context)
        self._record(phase, result)
        if result.success:
            context.update(result.context_updates or {})
        return result

    def render(self) -> ActionResult:
        """Write the engine configuration and templates into the workspace."""
        start = time.time()
        assert self.workspace is not None
        try:
            path = write_workspace(self.manifest, self.workspace.work_dir, self.config)
        except ConfigError as e:
            result = ActionResult(success=False, message=f"Render failed: {e}",
                                  duration=time.time() - start)
        else:
            result = ActionResult(
                success=True,
                message=f"Rendered {len(self.graph)} resources to {path}",
                duration=time.time() - start,
                context_updates={'config_path': str(path)},
            )
        self._record('render', result)
        return result

    def _prepare(self, context: dict) -> bool:
        """Render the workspace and run engine init."""
        rendered = self.render()
        if not rendered.success:
            return False
        context.update(rendered.context_updates)
        assert self.workspace is not None
        init = TofuInitAction(name='init', workspace=self.workspace, env=self._env)
        return self._run('init', init, context).success

    def _plan_action(self, destroy: bool = False) -> TofuPlanAction:
        assert self.workspace is not None
        return TofuPlanAction(
            name='plan',
            workspace=self.workspace,
            env=self._env,
            destroy=destroy,
            parallelism=self.manifest.settings.parallelism,
            lock_timeout=self.manifest.settings.lock_timeout,
        )

    def plan(self, context: dict, destroy: bool = False) -> tuple[bool, ExecutionState]:
        """Render, init and plan; record the planned action per resource."""
        state = self._new_state('plan')
        if self.dry_run:
            if destroy:
                self._preview_destroy()
            else:
                self._preview_create()
            self._finish(state)
            return True, state

        if not self._prepare(context):
            self._finish(state)
            return False, state

        result = self._run('plan', self._plan_action(destroy), context)
        if result.success:
            for address, action in result.context_updates['plan']['changes'].items():
                state.get_resource(address).action = action
            for address, rs in state.resources.items():
                if rs.action is None:
                    rs.mark_unchanged()
        self._finish(state)
        return result.success, state

    def apply(self, context: dict) -> tuple[bool, ExecutionState]:
        """Converge remote state to the manifest."""
        state = self._new_state('apply')
        if self.dry_run:
            self._preview_create()
            self._finish(state)
            return True, state

        if not self._prepare(context):
            self._finish(state)
            return False, state

        assert self.workspace is not None
        for rs in state.resources.values():
            rs.start()
        apply_action = TofuApplyAction(
            name='apply',
            workspace=self.workspace,
            env=self._env,
            parallelism=self.manifest.settings.parallelism,
            lock_timeout=self.manifest.settings.lock_timeout,
        )
        result = apply_action.run(self.config, context)
        self._record('apply', result)
        context.update(result.context_updates or {})

        outcome = result.context_updates.get('apply', {})
        for address, action in outcome.get('completed', {}).items():
            state.get_resource(address).complete(action)
        for address in outcome.get('errored', {}):
            state.get_resource(address).fail(result.message)
        for rs in state.resources.values():
            if rs.status != 'running':
                continue
            if result.success:
                rs.mark_unchanged()
            else:
                rs.status = 'pending'

        if result.success:
            output = TofuOutputAction(name='output', workspace=self.workspace, env=self._env)
            if not self._run('output', output, context).success:
                logger.warning("Apply succeeded but outputs could not be read")
            logger.info(f"Applied manifest '{self.manifest.name}': {state.counts()}")

        self._finish(state)
        return result.success, state

    def destroy(self, context: dict) -> tuple[bool, ExecutionState]:
        """Remove every resource tracked in the workspace state."""
        state = self._new_state('destroy')
        if self.dry_run:
            self._preview_destroy()
            self._finish(state)
            return True, state

        if not self._prepare(context):
            self._finish(state)
            return False, state

        assert self.workspace is not None
        destroy_action = TofuDestroyAction(
            name='destroy',
            workspace=self.workspace,
            env=self._env,
            parallelism=self.manifest.settings.parallelism,
            lock_timeout=self.manifest.settings.lock_timeout,
        )
        result = destroy_action.run(self.config, context)
        self._record('destroy', result)
        context.update(result.context_updates or {})

        outcome = result.context_updates.get('destroy', {})
        for address in outcome.get('completed', {}):
            state.get_resource(address).mark_destroyed()
        for address in outcome.get('errored', {}):
            state.get_resource(address).fail(result.message)

        self._finish(state)
        return result.success, state

    def check(self, context: dict) -> tuple[bool, ExecutionState]:
        """Verify remote state has converged: a fresh plan must be a no-op."""
        ok, state = self.plan(context)
        state.verb = 'check'
        if not ok or self.dry_run:
            return ok, state

        if context.get('converged'):
            logger.info(f"Manifest '{self.manifest.name}' is converged (no changes)")
            if self.report is not None:
                self.report.pass_phase('check', 'No changes')
            return True, state

        pending = context.get('plan', {}).get('changes', {})
        message = "Drift detected: " + ', '.join(f"{a} ({act})" for a, act in pending.items())
        logger.error(message)
        if self.report is not None:
            self.report.fail_phase('check', message)
        return False, state

    def test(self, context: dict) -> tuple[bool, ExecutionState]:
        """Apply, verify idempotence, then destroy."""
        apply_ok, state = self.apply(context)
        if self.dry_run:
            return apply_ok, state

        if not apply_ok:
            if self.manifest.settings.cleanup_on_failure:
                logger.info("Apply failed, cleaning up...")
                self.destroy(context)
            return False, state

        check_ok, _ = self.check(context)
        destroy_ok, _ = self.destroy(context)
        return apply_ok and check_ok and destroy_ok, state

    def _preview_create(self) -> None:
        """Preview create operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN APPLY: {self.manifest.name}")
        print(f"  Repository: {self.manifest.provider.owner or self.config.owner}/{self.manifest.repository.name}")
        print(f"  Resources: {len(self.graph)}")
        print("=" * 65)
        print("")
        for node in self.graph.create_order():
            print(f"  [{node.depth}] {node.address}")
            explicit = self.graph.explicit_dependencies(node.address)
            if explicit:
                print(f"      after: {', '.join(explicit)}")
        print("")

    def _preview_destroy(self) -> None:
        """Preview destroy operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN DESTROY: {self.manifest.name}")
        print("=" * 65)
        print("")
        for node in self.graph.destroy_order():
            print(f"  [{node.depth}] {node.address}: destroy")
        print("")
