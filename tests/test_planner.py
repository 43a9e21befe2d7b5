import random
from datetime import timedelta

import pytest

from simcrm.config import PlannerConfig
from simcrm.errors import PlanningError
from simcrm.planner import (
    build_tokens,
    parse_timing_template,
    plan_from_template,
    plan_programmatic,
    substitute_placeholders,
)
from simcrm.schemas import JobRequest, TimingRow
from tests.fakes import FakeClock


def _row(day, action, record_type="", symbol="", associations=None):
    return TimingRow(
        relative_day=day,
        action_type=action,
        record_type=record_type,
        record_id_template=symbol,
        associations_template=associations or {},
    )


def test_contact_company_association_scenario_keeps_relative_order():
    start = FakeClock().now()
    rows = [
        _row(0, "create_contact", "contact", "C1"),
        _row(5, "create_company", "company", "K1"),
        _row(5, "associate", "contact", "C1", {"company": "K1"}),
    ]
    job_fields, steps = plan_from_template(rows, start_at=start)

    assert job_fields["scaling_factor"] == 1.0
    assert job_fields["base_cycle_days"] == 5
    assert [s["action_type"] for s in steps] == ["create_contact", "create_company", "associate"]
    assert [s["step_index"] for s in steps] == [0, 1, 2]
    assert [s["scheduled_at"] - start for s in steps] == [timedelta(0), timedelta(days=5), timedelta(days=5)]


def test_steps_sorted_by_scaled_day_regardless_of_source_order():
    start = FakeClock().now()
    rows = [_row(10, "create_deal", "deal"), _row(2, "create_contact", "contact"), _row(7, "create_note", "note")]
    job_fields, steps = plan_from_template(rows, start_at=start, target_cycle_days=5)

    assert job_fields["scaling_factor"] == pytest.approx(0.5)
    scaled = [s["scaled_day"] for s in steps]
    assert scaled == sorted(scaled)
    assert [s["template_day"] for s in steps] == [2, 7, 10]
    assert steps[-1]["scheduled_at"] == start + timedelta(days=5)


def test_fractional_scaling_uses_hours():
    start = FakeClock().now()
    rows = [_row(1, "create_contact", "contact"), _row(3, "create_company", "company")]
    _, steps = plan_from_template(rows, start_at=start, target_cycle_days=1)

    assert steps[0]["scheduled_at"] == start + timedelta(hours=8)
    assert steps[1]["scheduled_at"] == start + timedelta(hours=24)


def test_planning_errors():
    start = FakeClock().now()
    with pytest.raises(PlanningError) as empty:
        plan_from_template([], start_at=start)
    assert empty.value.code == "EMPTY_TEMPLATE"

    with pytest.raises(PlanningError) as zero:
        plan_from_template([_row(0, "create_contact", "contact")], start_at=start)
    assert zero.value.code == "INVALID_BASE_CYCLE"

    with pytest.raises(PlanningError) as target:
        plan_from_template([_row(3, "create_contact", "contact")], start_at=start, target_cycle_days=0)
    assert target.value.code == "INVALID_TARGET_CYCLE"

    with pytest.raises(PlanningError) as action:
        plan_from_template([_row(3, "teleport", "contact")], start_at=start)
    assert action.value.code == "INVALID_ACTION"


def test_parse_timing_template_handles_quoted_commas_and_json():
    text = (
        "Offset Day,Action Type,Object Type,Record ID Template,Associations Template,Action Template,Description\n"
        '0,create,Contact,C1,,"{""first_name"": ""Luke"", ""email"": ""luke@rebels.org""}","Intro, first touch"\n'
        "\n"
        '2,associate,contact,C1,"{""company"": ""K1""}",,Link\n'
    )
    rows = parse_timing_template(text)

    assert len(rows) == 2
    assert rows[0].relative_day == 0
    assert rows[0].record_type == "contact"
    assert rows[0].action_template == {"first_name": "Luke", "email": "luke@rebels.org"}
    assert rows[0].reason_template == "Intro, first touch"
    assert rows[1].associations_template == {"company": "K1"}
    assert rows[1].action_template == {}


def test_parse_timing_template_rejects_bad_day_and_json():
    with pytest.raises(PlanningError) as bad_day:
        parse_timing_template("Offset Day,Action Type\nsoon,create_contact\n")
    assert bad_day.value.code == "INVALID_TEMPLATE_ROW"

    with pytest.raises(PlanningError) as bad_json:
        parse_timing_template('relativeDay,actionType,actionTemplate\n1,create_contact,"{not json"\n')
    assert bad_json.value.code == "INVALID_TEMPLATE_JSON"

    with pytest.raises(PlanningError) as header:
        parse_timing_template("Name,Value\na,b\n")
    assert header.value.code == "INVALID_TEMPLATE_HEADER"


def test_deal_stage_after_column_feeds_action_template():
    rows = parse_timing_template("Offset Day,Object Type,Action Type,Deal Stage (after),Description\n4,Deal,update,closedwon,Won\n")
    assert rows[0].action_template == {"deal_stage": "closedwon"}
    assert rows[0].reason_template == "Won"


def test_substitute_placeholders_is_recursive_and_pure():
    tokens = {"theme": "star_wars", "industry": "tech", "domain": "tech", "contact_seq": "4"}
    template = {"email": "pilot{{contact_seq}}@{{ domain }}.io", "tags": ["{{theme}}", 3], "nested": {"x": "{{unknown}}"}}
    result = substitute_placeholders(template, tokens)

    assert result == {"email": "pilot4@tech.io", "tags": ["star_wars", 3], "nested": {"x": "{{unknown}}"}}
    assert template["email"] == "pilot{{contact_seq}}@{{ domain }}.io"


def test_build_tokens_aliases():
    clock = FakeClock()
    tokens = build_tokens(
        {"job_id": "j1", "simulation_id": None, "theme": "marvel", "industry": "retail", "sequence": 2, "user_id": 9},
        clock.now(),
    )
    assert tokens["job_id"] == tokens["simulation_id"] == "j1"
    assert tokens["domain"] == tokens["industry"] == "retail"
    assert tokens["contact_seq"] == tokens["sequence"] == "2"
    assert tokens["user_id"] == "9"
    assert tokens["timestamp"] == clock.now_iso()


def test_programmatic_plan_distributes_records_across_sets():
    start = FakeClock().now()
    config = PlannerConfig(max_sets=20, dependent_offset_minutes=5, set_jitter_fraction=0.25, first_set_max_delay_minutes=2)
    _, steps = plan_programmatic(7, duration_days=10, start_at=start, config=config, rng=random.Random(1))

    creates = [s for s in steps if s["action_type"].startswith("create")]
    assert len(creates) == 7
    scaled = [s["scaled_day"] for s in steps]
    assert scaled == sorted(scaled)
    assert min(s["scheduled_at"] for s in steps) - start <= timedelta(minutes=2)

    by_symbol = {s["record_id_template"]: s for s in creates}
    for assoc in (s for s in steps if s["action_type"] == "associate"):
        contact = by_symbol[assoc["record_id_template"]]
        company = by_symbol[assoc["associations_template"]["company"]]
        gap = (assoc["scheduled_at"] - contact["scheduled_at"]).total_seconds()
        assert gap == pytest.approx(300, abs=0.001)
        assert assoc["step_index"] > company["step_index"]
    deal = by_symbol["deal_1_1"]
    assert deal["associations_template"] == {"contact": "contact_1_1", "company": "company_1_1"}


def test_programmatic_plan_caps_sets():
    start = FakeClock().now()
    _, steps = plan_programmatic(100, duration_days=30, start_at=start, config=PlannerConfig(max_sets=20), rng=random.Random(2))

    assert len({s["reason_template"] for s in steps}) == 20
    assert len([s for s in steps if s["action_type"].startswith("create")]) == 100
    set_starts = {}
    for step in steps:
        set_starts.setdefault(step["reason_template"], step["scheduled_at"])
    ordered = [set_starts[f"set {n}"] for n in range(1, 21)]
    assert ordered == sorted(ordered)


def test_programmatic_plan_rejects_bad_targets():
    start = FakeClock().now()
    with pytest.raises(PlanningError):
        plan_programmatic(0, duration_days=3, start_at=start)
    with pytest.raises(PlanningError):
        plan_programmatic(5, duration_days=0, start_at=start)


@pytest.mark.asyncio
async def test_create_job_persists_steps_with_substituted_tokens(engine):
    request = JobRequest(
        theme="marvel",
        industry="retail",
        sequence=7,
        rows=[
            TimingRow(relative_day=0, action_type="create_contact", record_type="contact", record_id_template="contact_{{contact_seq}}"),
            TimingRow(
                relative_day=2,
                action_type="create_deal",
                record_type="deal",
                record_id_template="deal_{{contact_seq}}",
                associations_template={"contact": "contact_{{contact_seq}}"},
                action_template={"deal_name": "{{theme}} renewal"},
            ),
        ],
        target_cycle_days=4,
    )
    created = await engine.planner.create_job(request)
    job = await engine.store.get_job(created["job_id"])
    steps = await engine.store.list_steps(created["job_id"])

    assert created["steps"] == 2
    assert job["status"] == "pending"
    assert job["scaling_factor"] == pytest.approx(2.0)
    assert steps[0]["record_id_template"] == "contact_7"
    assert steps[1]["associations_template"] == {"contact": "contact_7"}
    assert steps[1]["action_template"] == {"deal_name": "marvel renewal"}
