"""Rule-based and global-policy detention qualification."""

from datetime import timedelta

import pytest

from conftest import TODAY, add_incident, make_rule, make_student


@pytest.mark.asyncio
async def test_points_threshold_rule_matches_within_window(db_session, services, tenant_id) -> None:
    rule = await make_rule(db_session, tenant_id, min_points=10, max_points=None, time_period_days=30)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 4, TODAY - timedelta(days=20))
    await add_incident(db_session, student, 5, TODAY - timedelta(days=10))
    await add_incident(db_session, student, 3, TODAY - timedelta(days=1))

    matched = await services.evaluator.evaluate(db_session, tenant_id, student.id)

    assert matched is not None
    assert matched.id == rule.id


@pytest.mark.asyncio
async def test_incidents_outside_window_are_ignored(db_session, services, tenant_id) -> None:
    await make_rule(db_session, tenant_id, min_points=10, time_period_days=30)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 8, TODAY - timedelta(days=45))
    await add_incident(db_session, student, 4, TODAY - timedelta(days=5))

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None


@pytest.mark.asyncio
async def test_resolved_incidents_do_not_qualify(db_session, services, tenant_id) -> None:
    await make_rule(db_session, tenant_id, min_points=10)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 12, TODAY - timedelta(days=3), is_resolved=True)

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None


@pytest.mark.asyncio
async def test_rules_evaluated_in_ascending_min_points_with_upper_bound(db_session, services, tenant_id) -> None:
    high = await make_rule(db_session, tenant_id, name="Serious", min_points=16, max_points=None)
    await make_rule(db_session, tenant_id, name="Moderate", min_points=10, max_points=15)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 20, TODAY - timedelta(days=2))

    match = await services.evaluator.first_match(db_session, tenant_id, student.id)

    assert match is not None
    assert match.rule.id == high.id
    assert match.observed == 20


@pytest.mark.asyncio
async def test_first_matching_rule_wins(db_session, services, tenant_id) -> None:
    low = await make_rule(db_session, tenant_id, name="3+ incidents", action_type="incident_count", min_points=3)
    await make_rule(db_session, tenant_id, name="10+ points", min_points=10)
    student = await make_student(db_session, tenant_id)
    for _ in range(3):
        await add_incident(db_session, student, 4, TODAY - timedelta(days=1))

    matched = await services.evaluator.evaluate(db_session, tenant_id, student.id)

    assert matched.id == low.id


@pytest.mark.asyncio
async def test_severity_match_rule(db_session, services, tenant_id) -> None:
    rule = await make_rule(
        db_session, tenant_id, name="High severity", action_type="severity_match", min_points=1, severity="high"
    )
    calm = await make_student(db_session, tenant_id, first_name="Calm")
    wild = await make_student(db_session, tenant_id, first_name="Wild")
    await add_incident(db_session, calm, 2, TODAY, severity="medium")
    await add_incident(db_session, wild, 2, TODAY, severity="high")

    assert await services.evaluator.evaluate(db_session, tenant_id, calm.id) is None
    matched = await services.evaluator.evaluate(db_session, tenant_id, wild.id)
    assert matched.id == rule.id


@pytest.mark.asyncio
async def test_inactive_rules_are_skipped(db_session, services, tenant_id) -> None:
    await make_rule(db_session, tenant_id, min_points=1, is_active=False)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 5, TODAY)

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None


@pytest.mark.asyncio
async def test_explicit_rule_set_overrides_stored_rules(db_session, services, tenant_id) -> None:
    stored = await make_rule(db_session, tenant_id, name="Stored", min_points=50)
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 12, TODAY)

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None
    stored.min_points = 10
    assert (await services.evaluator.evaluate(db_session, tenant_id, student.id, rules=[stored])).id == stored.id


@pytest.mark.asyncio
async def test_global_policy_lists_students_at_or_above_threshold(db_session, services, tenant_id) -> None:
    over = await make_student(db_session, tenant_id, first_name="Over")
    exact = await make_student(db_session, tenant_id, first_name="Exact")
    under = await make_student(db_session, tenant_id, first_name="Under")
    await add_incident(db_session, over, 9, TODAY - timedelta(days=200))
    await add_incident(db_session, over, 6, TODAY)
    await add_incident(db_session, exact, 10, TODAY)
    await add_incident(db_session, under, 9, TODAY)
    await add_incident(db_session, under, 7, TODAY, is_resolved=True)

    qualifying = await services.evaluator.qualifying_students(db_session, tenant_id)

    assert [q.student_id for q in qualifying] == [over.id, exact.id]
    assert qualifying[0].points == 15


@pytest.mark.asyncio
async def test_zero_point_incidents_do_not_count(db_session, services, tenant_id) -> None:
    await make_rule(db_session, tenant_id, name="3+ incidents", action_type="incident_count", min_points=3)
    await make_rule(
        db_session, tenant_id, name="High severity", action_type="severity_match", min_points=1, severity="high"
    )
    student = await make_student(db_session, tenant_id)
    for _ in range(3):
        await add_incident(db_session, student, 0, TODAY, severity="high")

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None
