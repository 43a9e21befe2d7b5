import pytest

from simcrm.errors import ExternalPermanentError, ExternalTransientError, GenerationError, ValidationError
from simcrm.generator import ContentCache, canonicalize, derive_seed, normalize_domain, parse_json_payload
from simcrm.metadata import default_pipeline_stage, is_valid_pipeline_stage, owner_options, pipeline_options
from simcrm.schemas import ContactContent
from tests.fakes import FakeClock, FakeCrmClient, FakeLLMClient

JOB = {"job_id": "job-1", "theme": "star_wars", "industry": "defense"}


def _step(action_type="create_contact", index=0, template=None, reason=""):
    return {"step_index": index, "action_type": action_type, "action_template": template or {}, "reason_template": reason}


def test_seed_is_stable_and_step_specific():
    first = derive_seed("job-1", "star_wars", "defense", 0, "create_contact")
    assert first == derive_seed("job-1", "star_wars", "defense", 0, "create_contact")
    assert len(first) == 8
    int(first, 16)
    assert first != derive_seed("job-1", "star_wars", "defense", 1, "create_contact")
    assert first != derive_seed("job-2", "star_wars", "defense", 0, "create_contact")


def test_parse_json_payload_strips_fences():
    assert parse_json_payload('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(ValueError):
        parse_json_payload("[1, 2]")
    with pytest.raises(ValueError):
        parse_json_payload("sure, here you go")


def test_canonicalize_and_domain_normalisation():
    data = canonicalize(ContactContent, {"firstName": "Leia", "lastname": "Organa", "jobTitle": "General"})
    assert data == {"first_name": "Leia", "last_name": "Organa", "job_title": "General"}
    assert normalize_domain("https://www.Rebels.org/join?x=1") == "rebels.org"
    assert normalize_domain("hoth") == "hoth.com"


def test_cache_ttl_and_isolation():
    clock = FakeClock()
    cache = ContentCache(ttl_s=60, clock=clock)
    payload = {"first_name": "Han", "_internal": True}
    cache.set("Star_Wars", "Defense", "abcd1234", payload, "create_contact")

    got = cache.get("star_wars", "defense", "abcd1234", "create_contact")
    assert got == {"first_name": "Han"}
    got["first_name"] = "Greedo"
    assert cache.get("star_wars", "defense", "abcd1234", "create_contact") == {"first_name": "Han"}
    assert cache.get("star_wars", "defense", "abcd1234", "create_company") is None

    clock.advance(61)
    assert cache.get("star_wars", "defense", "abcd1234", "create_contact") is None
    stats = cache.get_stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 2
    assert stats["size"] == 0


def test_cache_evicts_entries_that_fail_validation():
    cache = ContentCache(ttl_s=60, clock=FakeClock())
    cache.set("t", "i", "seed0001", {"first_name": "Han"}, "create_contact")

    got = cache.get("t", "i", "seed0001", "create_contact", validate=ContactContent.model_validate)
    assert got is None
    assert cache.get_stats()["evicted_invalid"] == 1
    assert cache.get_stats()["size"] == 0


def test_cache_cleanup_and_reset():
    clock = FakeClock()
    cache = ContentCache(ttl_s=10, clock=clock)
    cache.set("t", "i", "s1", {"a": 1})
    cache.set("t", "i", "s2", {"a": 2}, ttl_s=100)
    clock.advance(20)
    assert cache.cleanup() == 1
    assert cache.delete("t", "i", "s2") is True
    cache.reset()
    assert cache.get_stats() == {"size": 0, "hits": 0, "misses": 0, "evicted_invalid": 0, "writes": 0}


@pytest.mark.asyncio
async def test_generate_calls_llm_once_then_serves_cache(engine):
    first = await engine.generator.generate(JOB, _step(), "create", "contact", correlation="job-1:0")
    second = await engine.generator.generate(JOB, _step(), "create", "contact", correlation="job-1:0")

    assert first.source == "llm"
    assert second.source == "cache"
    assert first.content == second.content
    assert first.content["email"] == f"ada.{first.seed}@analytical.io"
    assert len(engine.llm.calls) == 1
    call = engine.llm.calls[0]
    assert call["seed"] == int(first.seed, 16)
    assert call["response_format"] == {"type": "json_object"}
    assert f"seed for consistent generation: {first.seed}" in call["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_expired_cache_regenerates(engine):
    await engine.generator.generate(JOB, _step(), "create", "contact", correlation="c")
    engine.clock.advance(engine.settings.generation.cache_ttl_s + 1)
    again = await engine.generator.generate(JOB, _step(), "create", "contact", correlation="c")
    assert again.source == "llm"
    assert len(engine.llm.calls) == 2


@pytest.mark.asyncio
async def test_template_hints_override_generated_fields(engine):
    step = _step(template={"firstName": "Luke", "email": "luke@rebels.org"}, reason="Signed up at Yavin")
    result = await engine.generator.generate(JOB, step, "create", "contact", correlation="c")

    assert result.content["first_name"] == "Luke"
    assert result.content["email"] == "luke@rebels.org"
    prompt = engine.llm.calls[0]["messages"][-1]["content"]
    assert "Signed up at Yavin" in prompt
    assert "luke@rebels.org" in prompt


@pytest.mark.asyncio
async def test_invalid_output_is_repaired_once(engine_factory):
    llm = FakeLLMClient(
        responses=[{"first_name": "Luke", "last_name": "Skywalker", "email": "luke at rebels", "company_name": "Rebel Alliance"}]
    )
    engine = engine_factory(llm=llm)
    result = await engine.generator.generate(JOB, _step(), "create", "contact", correlation="c")

    assert result.source == "llm"
    assert result.repairs == ["set default lifecycle_stage", "rebuilt email"]
    assert result.content["email"] == "luke@rebelalliance.com"
    assert result.content["lifecycle_stage"] == "lead"


@pytest.mark.asyncio
async def test_deal_repair_uses_crm_pipeline_defaults(engine_factory):
    llm = FakeLLMClient(responses=[{"deal_name": "Shield generator", "amount": "$1,200", "deal_type": "New Business"}])
    engine = engine_factory(llm=llm)
    result = await engine.generator.generate(JOB, _step("create_deal"), "create", "deal", correlation="c")

    assert result.content["amount"] == 1200.0
    assert result.content["deal_type"] == "newbusiness"
    assert result.content["pipeline"] == "default"
    assert result.content["deal_stage"] == "appointmentscheduled"
    prompt = engine.llm.calls[0]["messages"][-1]["content"]
    assert 'Pipeline "default"' in prompt
    assert '"77"' in prompt


@pytest.mark.asyncio
async def test_unknown_pipeline_stage_is_replaced_with_crm_default(engine_factory):
    llm = FakeLLMClient(
        responses=[{"deal_name": "Trench run", "amount": 900, "pipeline": "enterprise-7", "deal_stage": "negotiation-phase"}]
    )
    engine = engine_factory(llm=llm)
    result = await engine.generator.generate(JOB, _step("create_deal"), "create", "deal", correlation="c")

    assert result.source == "llm"
    assert result.repairs == ["replaced unknown pipeline/stage"]
    assert (result.content["pipeline"], result.content["deal_stage"]) == ("default", "appointmentscheduled")


@pytest.mark.asyncio
async def test_unknown_ticket_stage_in_known_pipeline_is_replaced(engine_factory):
    llm = FakeLLMClient(
        responses=[{"subject": "Hyperdrive", "content": "Motivator broken", "pipeline": "0", "pipeline_stage": "99"}]
    )
    engine = engine_factory(llm=llm)
    result = await engine.generator.generate(JOB, _step("create_ticket"), "create", "ticket", correlation="c")

    assert (result.content["pipeline"], result.content["pipeline_stage"]) == ("0", "1")


@pytest.mark.asyncio
async def test_unparseable_output_relaxed_falls_back_to_template(engine_factory):
    engine = engine_factory(llm=FakeLLMClient(responses=["I cannot do that"]))
    step = _step(template={"first_name": "Wedge"})
    result = await engine.generator.generate(JOB, step, "create", "contact", correlation="c")

    assert result.source == "fallback"
    assert result.content == {"first_name": "Wedge"}
    assert engine.cache.get_stats()["writes"] == 0


@pytest.mark.asyncio
async def test_unparseable_output_strict_raises(engine_factory):
    engine = engine_factory(llm=FakeLLMClient(responses=["I cannot do that"]), strict_mode=True)
    with pytest.raises(GenerationError) as excinfo:
        await engine.generator.generate(JOB, _step(), "create", "contact", correlation="job-1:0")
    assert excinfo.value.code == "GENERATION_PARSE_FAILED"
    assert excinfo.value.context["correlation_id"] == "job-1:0"


@pytest.mark.asyncio
async def test_unrepairable_output_strict_raises(engine_factory):
    engine = engine_factory(llm=FakeLLMClient(responses=[{"subject": "only a subject"}]), strict_mode=True)
    with pytest.raises(GenerationError) as excinfo:
        await engine.generator.generate(JOB, _step("create_ticket"), "create", "ticket", correlation="c")
    assert excinfo.value.code == "GENERATION_INVALID"


@pytest.mark.asyncio
async def test_llm_failures_fall_back_or_raise(engine_factory):
    relaxed = engine_factory(llm=FakeLLMClient(responses=[ExternalPermanentError("UPSTREAM_REJECTED", "bad key", status_code=401)]))
    result = await relaxed.generator.generate(JOB, _step(), "create", "contact", correlation="c")
    assert result.source == "fallback"

    strict = engine_factory(
        llm=FakeLLMClient(responses=[ExternalTransientError("UPSTREAM_UNAVAILABLE", "503")] * 3),
        strict_mode=True,
    )
    with pytest.raises(GenerationError) as excinfo:
        await strict.generator.generate(JOB, _step(), "create", "contact", correlation="c")
    assert excinfo.value.code == "GENERATION_CALL_FAILED"
    assert len(strict.llm.calls) == 3


@pytest.mark.asyncio
async def test_update_template_skips_generation(engine):
    step = _step("update_deal", template={"deal_stage": "closedwon"})
    result = await engine.generator.generate(JOB, step, "update", "deal", correlation="c")
    assert result.source == "template"
    assert result.content == {"deal_stage": "closedwon"}
    assert engine.llm.calls == []

    with pytest.raises(ValidationError) as excinfo:
        await engine.generator.generate(JOB, _step("update_deal", template={"deal_stage": " "}), "update", "deal", correlation="c")
    assert excinfo.value.code == "INVALID_UPDATE_TEMPLATE"


@pytest.mark.asyncio
async def test_update_without_template_asks_for_properties(engine):
    result = await engine.generator.generate(JOB, _step("update_contact", index=4), "update", "contact", correlation="c")
    assert result.source == "llm"
    assert result.content == {"jobtitle": f"Lead Engineer {result.seed}"}


@pytest.mark.asyncio
async def test_associate_passes_template_through(engine):
    result = await engine.generator.generate(JOB, _step("associate", template={"label": "x"}), "associate", "contact", correlation="c")
    assert result.source == "template"
    assert result.content == {"label": "x"}


@pytest.mark.asyncio
async def test_metadata_failure_does_not_block_generation(engine_factory):
    class BrokenCrm(FakeCrmClient):
        async def list_pipelines(self, record_type):
            raise ExternalPermanentError("UPSTREAM_REJECTED", "forbidden", status_code=403)

    engine = engine_factory(crm=BrokenCrm())
    result = await engine.generator.generate(JOB, _step("create_deal"), "create", "deal", correlation="c")
    assert result.source == "llm"


@pytest.mark.asyncio
async def test_metadata_is_cached_and_helpers_render_options(engine):
    metadata = await engine.metadata.get()
    await engine.metadata.get()
    assert engine.crm.count("pipelines") == 2
    assert engine.crm.count("owners") == 1

    assert default_pipeline_stage(metadata, "deal") == ("default", "appointmentscheduled")
    assert default_pipeline_stage(metadata, "ticket") == ("0", "1")
    assert is_valid_pipeline_stage(metadata, "deal", "default", "closedwon")
    assert not is_valid_pipeline_stage(metadata, "deal", "default", "1")
    assert "Olive Owner" in owner_options(metadata)
    assert pipeline_options(metadata, "note") == "No note pipelines available"

    engine.clock.advance(3601)
    await engine.metadata.get()
    assert engine.crm.count("owners") == 2
