import pytest
from app.core.capabilities import (
    ARTIFACTS_READ,
    ARTIFACTS_WRITE,
    BUILD,
    DEPLOY,
    DEPLOY_INVOKE,
    INSTANCE,
    CapabilityFabric,
)
from app.core.errors import CapabilityDenied


def test_default_grants():
    fabric = CapabilityFabric()

    assert fabric.allows(BUILD, ARTIFACTS_WRITE)
    assert fabric.allows(DEPLOY, DEPLOY_INVOKE, "DeploymentGroup")
    assert fabric.allows(INSTANCE, ARTIFACTS_READ)
    assert not fabric.allows(INSTANCE, ARTIFACTS_WRITE)
    assert not fabric.allows(BUILD, DEPLOY_INVOKE)


def test_require_raises_with_context():
    with pytest.raises(CapabilityDenied) as exc:
        CapabilityFabric().require(INSTANCE, DEPLOY_INVOKE, "DeploymentGroup")

    assert str(exc.value) == "instance may not deploy:invoke on DeploymentGroup"
    assert not exc.value.retryable


def test_defaults_are_not_shared_between_fabrics():
    a = CapabilityFabric()
    a.revoke(BUILD, ARTIFACTS_WRITE)

    assert not a.allows(BUILD, ARTIFACTS_WRITE)
    assert CapabilityFabric().allows(BUILD, ARTIFACTS_WRITE)


def test_from_mapping_with_resource_patterns():
    fabric = CapabilityFabric.from_mapping({DEPLOY: ["artifacts:read", "deploy:invoke@web-*"]})

    assert fabric.allows(DEPLOY, DEPLOY_INVOKE, "web-dev")
    assert not fabric.allows(DEPLOY, DEPLOY_INVOKE, "db-dev")
    assert not fabric.allows(BUILD, ARTIFACTS_READ)
