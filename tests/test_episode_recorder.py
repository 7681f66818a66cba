from __future__ import annotations

import json

import allure
from conftest import FakeSynthesisClient, create_task, finish_task

from taskloop.coordinator.models import TaskView
from taskloop.coordinator.repository import TaskRepository
from taskloop.coordinator.services import TaskService
from taskloop.learning.episode_recorder import (
    NO_DIRECT_INPUT,
    EpisodeRecorder,
    build_episode_prompt,
    build_user_input,
    parse_episode_decision,
)
from taskloop.learning.models import FeedbackType
from taskloop.learning.repository import LearningRepository

pytestmark = [
    allure.epic("Learning Loop"),
    allure.feature("Episode Recorder"),
]

_CAPTURE = json.dumps(
    {
        "shouldCapture": True,
        "narrative": "User wanted the brand palette instead of default blues.",
        "feedbackType": "correction",
        "projectType": "landing-page",
        "workContext": "color choices",
        "tags": ["colors", " branding ", ""],
    },
)
_SKIP = json.dumps({"shouldCapture": False, "skipReason": "Perfect rating with no guidance"})


def _rated_task(
    repository: TaskRepository,
    *,
    rating: int,
    tags: list[str],
    comment: str | None = None,
) -> TaskView:
    task = finish_task(repository, create_task(repository, title="Landing page hero"))
    return repository.rate_task(task_id=task.task_id, rating=rating, tags=tags, comment=comment)


def test_non_capturable_perfect_rating_is_marked_processed_without_episode(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    task = _rated_task(task_repository, rating=5, tags=["perfect"])
    client = FakeSynthesisClient(responses=[_SKIP])

    summary = EpisodeRecorder(repository=learning_repository, client=client).poll_once()

    assert summary.examined == 1
    assert summary.skipped == 1
    assert summary.captured == 0
    assert learning_repository.list_episodes() == []
    assert task_repository.require_task(task_id=task.task_id).feedback_processed is True
    assert learning_repository.list_unprocessed_feedback() == []


def test_capturable_feedback_creates_one_episode(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    task = _rated_task(
        task_repository,
        rating=2,
        tags=["wrong-colors"],
        comment="Use the brand palette",
    )
    client = FakeSynthesisClient(responses=[_CAPTURE])

    summary = EpisodeRecorder(repository=learning_repository, client=client).poll_once()

    assert summary.captured == 1
    episodes = learning_repository.list_episodes()
    assert len(episodes) == 1
    episode = episodes[0]
    assert episode.source_task_id == task.task_id
    assert episode.feedback_type == FeedbackType.CORRECTION
    assert episode.project_type == "landing-page"
    assert episode.tags == ["colors", "branding"]
    assert episode.user_input == "Use the brand palette"
    assert episode.distilled is False
    assert "wrong-colors" in client.prompts[0]
    assert task_repository.require_task(task_id=task.task_id).feedback_processed is True


def test_failed_synthesis_leaves_task_for_retry(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    task = _rated_task(task_repository, rating=1, tags=["broken"])
    recorder = EpisodeRecorder(
        repository=learning_repository,
        client=FakeSynthesisClient(responses=[None, "not json at all", _CAPTURE]),
    )

    first = recorder.poll_once()
    second = recorder.poll_once()
    third = recorder.poll_once()

    assert first.retry_later == 1
    assert second.retry_later == 1
    assert third.captured == 1
    assert len(learning_repository.list_episodes()) == 1
    assert task_repository.require_task(task_id=task.task_id).feedback_processed is True


def test_each_rating_is_evaluated_at_most_once(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    _rated_task(task_repository, rating=3, tags=[])
    client = FakeSynthesisClient(responses=[_CAPTURE, _CAPTURE])
    recorder = EpisodeRecorder(repository=learning_repository, client=client)

    recorder.poll_once()
    again = recorder.poll_once()

    assert again.examined == 0
    assert len(client.prompts) == 1
    assert len(learning_repository.list_episodes()) == 1


def test_rerating_reopens_feedback_for_evaluation(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    task = _rated_task(task_repository, rating=5, tags=["perfect"])
    recorder = EpisodeRecorder(
        repository=learning_repository,
        client=FakeSynthesisClient(responses=[_SKIP, _CAPTURE]),
    )
    recorder.poll_once()

    task_repository.rate_task(task_id=task.task_id, rating=2, tags=["slow"], comment=None)
    summary = recorder.poll_once()

    assert summary.captured == 1


def test_record_episode_is_conditional_on_unprocessed_feedback(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    task = _rated_task(task_repository, rating=2, tags=[])
    assert learning_repository.mark_feedback_processed(task_id=task.task_id, reason="manual")

    recorder = EpisodeRecorder(
        repository=learning_repository,
        client=FakeSynthesisClient(responses=[_CAPTURE]),
    )
    assert recorder.process_task(task) == "skipped"
    assert learning_repository.list_episodes() == []


def test_user_input_combines_comment_and_thread(task_repository: TaskRepository) -> None:
    service = TaskService(repository=task_repository)
    task = service.add_task(task_type="Feature", title="Pricing page", message="Make it darker")
    task = finish_task(task_repository, task)
    rated = task_repository.rate_task(
        task_id=task.task_id,
        rating=3,
        tags=[],
        comment="Too bright",
    )

    assert build_user_input(rated) == "Too bright\nUser: Make it darker"
    prompt = build_episode_prompt(rated)
    assert "User: Make it darker" in prompt
    assert "Rating (1-5): 3" in prompt
    assert "Comment: Too bright" in prompt


def test_user_input_placeholder_when_nothing_was_said(task_repository: TaskRepository) -> None:
    task = _rated_task(task_repository, rating=4, tags=[])

    assert build_user_input(task) == NO_DIRECT_INPUT


def test_parse_episode_decision_rejects_incomplete_payloads() -> None:
    assert parse_episode_decision("nothing to see") is None
    assert parse_episode_decision('{"shouldCapture": "yes"}') is None
    assert parse_episode_decision('{"shouldCapture": true, "feedbackType": "approval"}') is None
    assert (
        parse_episode_decision(
            '{"shouldCapture": true, "narrative": "x", "feedbackType": "praise"}',
        )
        is None
    )

    decision = parse_episode_decision(
        'Verdict:\n```json\n{"shouldCapture": true, "narrative": "Liked the layout", '
        '"feedbackType": "Approval"}\n```',
    )
    assert decision is not None
    assert decision.feedback_type == FeedbackType.APPROVAL
    assert decision.tags == []
