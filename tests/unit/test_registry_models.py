import pytest

from chainflow.constants import WorkflowStatus
from chainflow.contracts import RegistryValidationError, UnknownStepKind, UnknownWorkflow
from chainflow.handlers import InitHandler, MarkFailureHandler, MarkSuccessHandler
from chainflow.registry import MARK_FAILURE, MARK_SUCCESS, StepRegistry, TransitionRule, terminal_rules
from chainflow.workflows import WorkflowCatalog, WorkflowDefinition, default_catalog, grant_eth_ost, stake_and_mint


def _registry(*rules):
    return StepRegistry("demo", [*rules, *terminal_rules()])


def test_next_returns_rule_and_rejects_unknown_kind():
    registry = _registry(TransitionRule(kind="init", on_success=[MARK_SUCCESS]))

    assert registry.next("init").on_success == [MARK_SUCCESS]
    assert registry.next(MARK_SUCCESS).is_terminal
    with pytest.raises(UnknownStepKind):
        registry.next("nope")


def test_duplicate_kind_rejected():
    with pytest.raises(RegistryValidationError):
        _registry(TransitionRule(kind="init"), TransitionRule(kind="init"))


def test_validate_requires_closed_graph():
    registry = _registry(
        TransitionRule(kind="init", on_success=["submit"], on_failure=MARK_FAILURE),
    )
    with pytest.raises(RegistryValidationError, match="submit"):
        registry.validate("init")


def test_validate_checks_init_and_terminal_marks():
    registry = StepRegistry("demo", [TransitionRule(kind="init")])
    with pytest.raises(RegistryValidationError, match="init kind"):
        registry.validate("start")
    with pytest.raises(RegistryValidationError, match="must mark"):
        registry.validate("init")


def test_only_terminal_rules_mark_workflow():
    with pytest.raises(ValueError):
        TransitionRule(kind="init", on_success=["next"], marks=WorkflowStatus.COMPLETED)


def test_definition_requires_handler_for_every_kind():
    registry = _registry(TransitionRule(kind="init", on_success=[MARK_SUCCESS], on_failure=MARK_FAILURE))
    handlers = {"init": InitHandler, MARK_SUCCESS: MarkSuccessHandler}
    with pytest.raises(RegistryValidationError, match="no handler"):
        WorkflowDefinition("demo", "workflow.demo", "init", registry, handlers)

    handlers[MARK_FAILURE] = MarkFailureHandler
    handlers["extra"] = InitHandler
    with pytest.raises(RegistryValidationError, match="unregistered"):
        WorkflowDefinition("demo", "workflow.demo", "init", registry, handlers)


def test_builtin_workflows_are_closed():
    grant_eth_ost.registry.validate(grant_eth_ost.GRANT_ETH_OST_INIT)
    stake_and_mint.registry.validate(stake_and_mint.INIT)

    assert grant_eth_ost.registry.next(grant_eth_ost.GRANT_ETH).status_check == grant_eth_ost.VERIFY_GRANT_ETH
    assert stake_and_mint.registry.next(stake_and_mint.UPDATE_COMMITTED_STATE_ROOT_INFO).on_failure is None
    assert stake_and_mint.registry.next(stake_and_mint.COMMIT_STATE_ROOT).chain == "aux"
    assert stake_and_mint.registry.next(stake_and_mint.PROGRESS_STAKE).chain == "origin"


def test_stake_and_mint_needs_integrator_handlers():
    assert stake_and_mint.APPROVE in stake_and_mint.INTEGRATOR_KINDS
    assert stake_and_mint.CHECK_PROGRESS_MINT_STATUS not in stake_and_mint.INTEGRATOR_KINDS
    with pytest.raises(RegistryValidationError):
        stake_and_mint.definition({})

    definition = stake_and_mint.definition({kind: InitHandler for kind in stake_and_mint.INTEGRATOR_KINDS})
    assert definition.topic == "auxWorkflow.stPrimeStakeAndMint"


def test_catalog_lookup():
    catalog = default_catalog()

    assert grant_eth_ost.WORKFLOW_KIND in catalog
    assert catalog.for_topic("workflow.grantEthOst").kind == grant_eth_ost.WORKFLOW_KIND
    with pytest.raises(UnknownWorkflow):
        catalog.get("nope")
    with pytest.raises(RegistryValidationError):
        WorkflowCatalog([grant_eth_ost.definition(), grant_eth_ost.definition()])
