from __future__ import annotations

import sys
import types
from collections.abc import Callable, Iterator

import allure
import pytest

from bemadralphy.engines.registry import EngineRegistry
from bemadralphy.errors import ConfigurationError, EngineError
from bemadralphy.pipeline.hooks import FrozenHooks, HookRegistry
from bemadralphy.pipeline.models import PhaseName
from bemadralphy.plugins import PluginApi, load_plugins

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Plugins & Hooks"),
]


class _Ctx:
    def __init__(self) -> None:
        self.seen: list[str] = []


def _recorder(label: str) -> Callable[[_Ctx], None]:
    def hook(ctx: _Ctx) -> None:
        ctx.seen.append(label)

    return hook


@pytest.fixture()
def plugin_module() -> Iterator[types.ModuleType]:
    module = types.ModuleType("bemad_test_plugin")

    class ExamplePlugin:
        name = "example"

        def register(self, api: PluginApi) -> None:
            api.on_before_phase("intake", _recorder("class-before"))

    def register(api: PluginApi) -> None:
        api.on_after_phase(PhaseName.POST, _recorder("function-after"))

    module.ExamplePlugin = ExamplePlugin  # type: ignore[attr-defined]
    module.register = register  # type: ignore[attr-defined]
    module.not_a_plugin = 42  # type: ignore[attr-defined]
    sys.modules[module.__name__] = module
    try:
        yield module
    finally:
        sys.modules.pop(module.__name__, None)


def test_hooks_run_in_registration_order() -> None:
    registry = HookRegistry()
    registry.on_before(PhaseName.SYNC, _recorder("first"))
    registry.on_before("sync", _recorder("second"))
    registry.on_after(PhaseName.SYNC, _recorder("after"))
    hooks = registry.freeze()
    ctx = _Ctx()

    hooks.run_before(PhaseName.SYNC, ctx)  # type: ignore[arg-type]
    hooks.run_after(PhaseName.SYNC, ctx)  # type: ignore[arg-type]
    hooks.run_before(PhaseName.EXECUTE, ctx)  # type: ignore[arg-type]

    assert ctx.seen == ["first", "second", "after"]
    assert hooks.count() == 3


def test_hook_may_replace_context() -> None:
    registry = HookRegistry()
    replacement = _Ctx()
    registry.on_before(
        PhaseName.INTAKE,
        lambda ctx: replacement,  # type: ignore[arg-type,return-value]
    )

    result = registry.freeze().run_before(PhaseName.INTAKE, _Ctx())  # type: ignore[arg-type]

    assert result is replacement


def test_frozen_hooks_ignore_later_registrations() -> None:
    registry = HookRegistry()
    hooks = registry.freeze()
    registry.on_before(PhaseName.INTAKE, _recorder("late"))

    assert hooks.count() == 0
    assert FrozenHooks.empty().count() == 0
    with pytest.raises(TypeError):
        hooks.before[PhaseName.INTAKE] = ()  # type: ignore[index]


def test_unknown_phase_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        HookRegistry().on_before("deploy", _recorder("never"))


def test_load_builtin_plugin_registers_hooks() -> None:
    runtime = load_plugins(["tasks-md"], EngineRegistry())

    assert runtime.plugins == ("tasks-md",)
    assert len(runtime.hooks.after[PhaseName.SYNC]) == 1
    assert len(runtime.hooks.after[PhaseName.EXECUTE]) == 1


def test_load_module_plugins_by_import_path(plugin_module: types.ModuleType) -> None:
    runtime = load_plugins(
        [f"{plugin_module.__name__}:ExamplePlugin", f"{plugin_module.__name__}:register"],
        EngineRegistry(),
    )
    ctx = _Ctx()

    runtime.hooks.run_before(PhaseName.INTAKE, ctx)  # type: ignore[arg-type]
    runtime.hooks.run_after(PhaseName.POST, ctx)  # type: ignore[arg-type]

    assert ctx.seen == ["class-before", "function-after"]


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        ("no-such-plugin", "Unknown plugin"),
        ("bemad_missing_module_xyz:register", "Cannot import plugin module"),
        ("bemad_test_plugin:missing", "not found"),
        ("bemad_test_plugin:not_a_plugin", "has no register"),
    ],
)
def test_invalid_plugin_entries_raise_configuration_error(
    plugin_module: types.ModuleType,
    entry: str,
    message: str,
) -> None:
    with pytest.raises(ConfigurationError, match=message):
        load_plugins([entry], EngineRegistry())


def test_plugin_engines_are_visible_in_frozen_snapshot(make_engine: Callable[..., object]) -> None:
    registry = EngineRegistry()
    registry.register(make_engine("alpha"))  # type: ignore[arg-type]

    class _EnginePlugin:
        name = "engine-plugin"

        def register(self, api: PluginApi) -> None:
            api.register_engine(make_engine("swarmy", native=True))  # type: ignore[arg-type]

    module = types.ModuleType("bemad_engine_plugin")
    module.EnginePlugin = _EnginePlugin  # type: ignore[attr-defined]
    sys.modules[module.__name__] = module
    try:
        runtime = load_plugins(["bemad_engine_plugin:EnginePlugin"], registry)
    finally:
        sys.modules.pop(module.__name__, None)

    assert sorted(runtime.engines) == ["alpha", "swarmy"]
    assert runtime.capabilities() == {"alpha": False, "swarmy": True}
    registry.register(make_engine("late"))  # type: ignore[arg-type]
    assert "late" not in runtime.engines
    with pytest.raises(TypeError):
        runtime.engines["other"] = None  # type: ignore[index]


def test_registry_rejects_duplicate_and_unknown_engines(make_engine: Callable[..., object]) -> None:
    registry = EngineRegistry()
    registry.register(make_engine("alpha"))  # type: ignore[arg-type]

    with pytest.raises(EngineError, match="already registered"):
        registry.register(make_engine("ALPHA"))  # type: ignore[arg-type]
    with pytest.raises(EngineError, match="Unknown engine: beta"):
        registry.get("beta")
    registry.register(make_engine("alpha"), replace=True)  # type: ignore[arg-type]
    assert registry.names() == ["alpha"]
