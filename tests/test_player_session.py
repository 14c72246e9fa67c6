import asyncio

import pytest

from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError, GateViolation, PolicySeekViolation
from course_player.schemas.progress import LessonProgress
from course_player.schemas.signals import MediaEnded, MediaProgress, MediaSeek, PdfPagesViewed, PlaybackState, TextViewed
from course_player.schemas.xapi import Actor
from course_player.services.outbox import Outbox
from course_player.services.scorm_runtime import TRUE
from course_player.services.session_registry import open_session

pytestmark = pytest.mark.anyio


@pytest.fixture
async def handle(lms, actor, session_factory, settings, rte):
    handle = await open_session(
        lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte
    )
    yield handle
    await handle.session.teardown()
    await handle.backend.aclose()


def _done(lesson_id: str) -> LessonProgress:
    return LessonProgress(lesson_id=lesson_id, completion_percentage=100, is_completed=True)


async def test_initial_lock_state_from_backend_snapshot(lms, actor, session_factory, settings, rte):
    lms.seed(_done("video-1"))
    handle = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    session = handle.session

    assert session.get_lock_state().is_locked(0, 1) is False
    assert session.get_lock_state().is_locked(0, 2) is True
    assert session.get_lesson_progress("video-1").is_completed is True

    await session.teardown()
    await handle.backend.aclose()


async def test_unknown_course_is_not_found(lms, actor, session_factory, settings):
    backend = lms.backend()
    with pytest.raises(ApiError) as exc_info:
        await open_session("missing", actor, backend, session_factory, settings=settings)
    assert exc_info.value.status_code == 404
    assert exc_info.value.code == ErrorCode.COURSE_NOT_FOUND
    await backend.aclose()


async def test_launching_locked_lesson_is_rejected(handle):
    with pytest.raises(GateViolation):
        handle.session.launch_lesson("pdf-1")
    assert handle.session.current_lesson is None


async def test_completing_video_unlocks_next_lesson_and_notifies(handle, lms):
    session = handle.session
    changes = []
    session.on_progress_changed(lambda progress, lock_state: changes.append((progress.lesson_id, lock_state)))

    launch = session.launch_lesson("video-1")
    assert launch.resume_position is None
    await session.submit_event("video-1", MediaProgress(fraction=0.5))
    delta = await session.submit_event("video-1", MediaEnded())

    assert delta.completed_now is True
    assert changes[-1][0] == "video-1"
    assert changes[-1][1].is_locked(0, 1) is False
    notices = session.drain_notices()
    assert any(n.level == "info" and "completed" in n.message for n in notices)

    await session.sync.wait_idle()
    assert lms.progress["video-1"].is_completed is True
    assert "launched" in lms.verbs() and "completed" in lms.verbs()


async def test_seek_violation_is_reported_and_not_fatal(handle):
    session = handle.session
    session.launch_lesson("video-1")
    await session.submit_event("video-1", MediaProgress(fraction=0.2))

    with pytest.raises(PolicySeekViolation):
        await session.submit_event("video-1", MediaSeek(target_fraction=0.9))

    notices = session.drain_notices()
    assert notices[-1].code == ErrorCode.SEEK_NOT_ALLOWED
    assert notices[-1].detail["snap_to"] == pytest.approx(0.2)

    # the session keeps accepting events
    delta = await session.submit_event("video-1", MediaProgress(fraction=0.3))
    assert delta.progress.completion_percentage == pytest.approx(30.0)


async def test_switching_lessons_cancels_previous_timers(handle):
    session = handle.session
    session.launch_lesson("video-1")
    timers = session.current_lesson.timers
    assert len(timers) == 2

    await session.submit_event("video-1", MediaEnded())
    session.launch_lesson("pdf-1")
    await asyncio.gather(*timers, return_exceptions=True)

    assert all(t.cancelled() for t in timers)
    assert session.current_lesson.lesson.id == "pdf-1"


async def test_heartbeat_sends_position_only_while_playing(handle, lms):
    session = handle.session
    session.launch_lesson("video-1")
    await session.submit_event("video-1", MediaProgress(fraction=0.4, position_seconds=40))
    await session.sync.wait_idle()
    lms.statements.clear()

    await session.heartbeat()
    await session.sync.wait_idle()
    assert "progressed" not in lms.verbs()

    await session.submit_event("video-1", PlaybackState(playing=True))
    await session.heartbeat()
    await session.sync.wait_idle()
    assert "progressed" in lms.verbs()
    assert lms.progress["video-1"].current_position == pytest.approx(40.0)


async def test_scorm_lesson_owns_the_runtime_slot(lms, actor, session_factory, settings, rte):
    lms.seed(_done("video-1"), _done("pdf-1"), _done("quiz-1"))
    handle = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    session = handle.session

    launch = session.launch_lesson("scorm-1")
    assert launch.rte_api == "API_1484_11"
    api = rte.lookup("API_1484_11")
    assert api.Initialize("") == TRUE
    api.SetValue("cmi.suspend_data", "slide=4")
    api.SetValue("cmi.completion_status", "completed")

    assert session.get_lesson_progress("scorm-1").is_completed is True
    assert session.get_lock_state().is_locked(1, 1) is False

    session.launch_lesson("text-1")
    assert rte.lookup("API_1484_11") is None
    assert rte.owner is None

    await session.teardown()
    await handle.backend.aclose()
    assert lms.progress["scorm-1"].suspend_data == "slide=4"


async def test_quiz_submission_completes_lesson_even_when_failed(lms, actor, session_factory, settings, rte):
    lms.seed(_done("video-1"), _done("pdf-1"))
    lms.grades["assess-1"] = (False, 40.0)
    handle = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    session = handle.session

    result = await session.submit_quiz("quiz-1", {"q1": "b"})
    await session.sync.wait_idle()

    assert result.passed is False
    progress = session.get_lesson_progress("quiz-1")
    assert progress.is_completed is True
    assert progress.is_passed is False
    assert "failed" in lms.verbs()
    assert lms.progress["quiz-1"].is_completed is True

    await session.teardown()
    await handle.backend.aclose()


async def test_locked_quiz_cannot_be_submitted(handle):
    with pytest.raises(GateViolation):
        await handle.session.submit_quiz("quiz-1", {})


async def test_teardown_flushes_and_ends_session(lms, actor, session_factory, settings, rte):
    handle = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    session = handle.session
    session.launch_lesson("video-1")
    session.post_event("video-1", MediaProgress(fraction=0.6))

    result = await session.teardown()
    await handle.backend.aclose()

    assert result.ok
    assert lms.progress["video-1"].completion_percentage == pytest.approx(60.0)
    assert session.current_lesson is None
    with pytest.raises(ApiError) as exc_info:
        session.launch_lesson("video-1")
    assert exc_info.value.status_code == 410


async def test_offline_progress_survives_into_next_session(lms, actor, session_factory, settings, rte):
    handle = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    handle.connectivity.set_online(False)
    session = handle.session
    session.launch_lesson("video-1")
    await session.submit_event("video-1", MediaProgress(fraction=0.7))
    await session.teardown()
    await handle.backend.aclose()

    assert "video-1" not in lms.progress
    assert Outbox(session_factory, lms.course.id, actor.id).count() > 0

    second = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings, slot=rte)
    assert second.session.get_lesson_progress("video-1").completion_percentage == pytest.approx(70.0)
    await second.session.sync.wait_idle()
    assert lms.progress["video-1"].completion_percentage == pytest.approx(70.0)
    await second.session.teardown()
    await second.backend.aclose()


async def test_pdf_progress_through_session(handle):
    session = handle.session
    session.dispatch("video-1", MediaEnded())
    session.launch_lesson("pdf-1")
    delta = await session.submit_event("pdf-1", PdfPagesViewed(total_pages=2, pages={1: 0.9}))
    assert delta.progress.completion_percentage == pytest.approx(50.0)


async def test_event_for_locked_lesson_is_rejected_without_state_change(handle):
    session = handle.session
    changes = []
    session.on_progress_changed(lambda progress, lock_state: changes.append(progress))

    with pytest.raises(GateViolation) as exc_info:
        await session.submit_event("text-1", TextViewed())
    assert exc_info.value.lesson_id == "text-1"

    session.post_event("text-1", TextViewed())
    await session.drain()

    assert session.get_lesson_progress("text-1") is None
    assert session.snapshot().completion_percentage == 0.0
    assert session.get_lock_state().is_locked(1, 1) is True
    assert changes == []


async def test_sessions_do_not_share_the_runtime_slot(lms, actor, session_factory, settings):
    lms.seed(_done("video-1"), _done("pdf-1"), _done("quiz-1"))
    other = Actor(id="learner-2", name="Bo Learner")
    first = await open_session(lms.course.id, actor, lms.backend(), session_factory, settings=settings)
    second = await open_session(lms.course.id, other, lms.backend(), session_factory, settings=settings)

    first.session.launch_lesson("scorm-1")
    second.session.launch_lesson("scorm-1")
    api = second.session.rte.lookup("API_1484_11")
    assert api.Initialize("") == TRUE
    assert api.SetValue("cmi.completion_status", "completed") == TRUE

    assert second.session.get_lesson_progress("scorm-1").is_completed is True
    assert first.session.get_lesson_progress("scorm-1") is None
    assert first.session.rte.owner is not second.session.rte.owner

    for handle in (first, second):
        await handle.session.teardown()
        await handle.backend.aclose()
