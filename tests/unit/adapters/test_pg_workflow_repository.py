import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from evoflow.adapters.secondary.persistence.models import WorkflowModel
from evoflow.adapters.secondary.persistence.pg_workflow_repository import PostgresWorkflowRepository
from evoflow.domain.workflow.entities.workflow import Workflow

DOCUMENT = {
    "id": "w1",
    "name": "Test",
    "nodes": [{"id": "in", "type": "input", "data": {"name": "Input"}}],
    "edges": [],
}


@pytest.fixture
def mock_session():
    return AsyncMock()


@pytest.fixture
def repo(mock_session):
    return PostgresWorkflowRepository(mock_session)


def _result(model):
    result = MagicMock()
    result.scalar_one_or_none.return_value = model
    return result


def _model():
    return WorkflowModel(
        id="w1",
        name="Test",
        document=json.dumps(DOCUMENT),
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_save_merges_document(repo, mock_session):
    workflow = Workflow.model_validate(DOCUMENT)

    await repo.save(workflow)

    model = mock_session.merge.call_args.args[0]
    assert model.id == "w1"
    assert model.name == "Test"
    assert json.loads(model.document)["nodes"][0]["data"] == {"name": "Input", "type": "input"}
    assert model.created_at is not None
    mock_session.commit.assert_called_once()


@pytest.mark.asyncio
async def test_get_workflow(repo, mock_session):
    mock_session.execute.return_value = _result(_model())

    result = await repo.get_by_id("w1")

    assert result.id == "w1"
    assert result.nodes[0].name == "Input"
    assert result.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_get_missing_workflow(repo, mock_session):
    mock_session.execute.return_value = _result(None)

    assert await repo.get_by_id("nope") is None


@pytest.mark.asyncio
async def test_update_rewrites_document(repo, mock_session):
    model = _model()
    mock_session.execute.return_value = _result(model)

    updated = await repo.update("w1", {"name": "Renamed", "description": "Now described"})

    assert updated.name == "Renamed"
    assert updated.description == "Now described"
    assert model.name == "Renamed"
    assert json.loads(model.document)["description"] == "Now described"
    assert model.updated_at == updated.updated_at
    mock_session.commit.assert_called_once()
    mock_session.rollback.assert_not_called()


@pytest.mark.asyncio
async def test_update_missing_workflow_rolls_back(repo, mock_session):
    mock_session.execute.return_value = _result(None)

    assert await repo.update("nope", {"name": "x"}) is None

    mock_session.rollback.assert_called_once()
    mock_session.commit.assert_not_called()
