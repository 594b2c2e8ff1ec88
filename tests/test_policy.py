import pytest

from pcas.model import Event
from pcas.policy import (
    Action,
    Condition,
    Policy,
    PolicyEngine,
    PolicyError,
    ProviderConfig,
    Rule,
    load_policy,
    parse_policy,
)


@pytest.fixture
def engine():
    policy = Policy(
        version="v1",
        providers=[
            ProviderConfig(name="mock-provider", type="mock"),
            ProviderConfig(name="openai-gpt4", type="openai"),
        ],
        rules=[
            Rule(
                name="Rule for PCAS domain events",
                condition=Condition(
                    any_of=[
                        Condition(event_type="pcas.architect.decision.v1"),
                        Condition(event_type="pcas.schedule.item.v1"),
                        Condition(event_type="pcas.plan.trip.v1"),
                        Condition(event_type="pcas.memory.create.v1"),
                    ]
                ),
                action=Action(provider="mock-provider"),
            ),
            Rule(
                name="Rule for user prompts",
                condition=Condition(event_type="pcas.user.prompt.v1"),
                action=Action(provider="openai-gpt4"),
            ),
        ],
    )
    return PolicyEngine(policy)


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("pcas.architect.decision.v1", "mock-provider"),
        ("pcas.schedule.item.v1", "mock-provider"),
        ("pcas.plan.trip.v1", "mock-provider"),
        ("pcas.memory.create.v1", "mock-provider"),
        ("pcas.user.prompt.v1", "openai-gpt4"),
        ("unknown.event.type", ""),
    ],
)
def test_select_provider_any_of(engine, event_type, expected):
    provider, _ = engine.select_provider(Event(type=event_type))
    assert provider == expected


def test_select_provider_for_stream_matches_same_rules(engine):
    assert engine.select_provider_for_stream("pcas.plan.trip.v1") == ("mock-provider", "")
    assert engine.select_provider_for_stream("unknown.event.type") == ("", "")


SAMPLE = """
version: v1
providers:
  - name: mock-provider
    type: mock
  - name: openai-gpt4
    type: openai
    model: gpt-4o
    temperature: 0.7
rules:
  - name: echo
    if:
      event_type: pcas.echo.v1
    then:
      provider: mock-provider
  - name: prompts
    if:
      any_of:
        - event_type: pcas.user.prompt.v1
        - event_type: pcas.user.question.v1
    then:
      provider: openai-gpt4
      prompt_template: "Answer: {{prompt}}"
  - name: shadowed
    if:
      event_type: pcas.echo.v1
    then:
      provider: never-used
"""


def test_parse_policy_structure():
    policy = parse_policy(SAMPLE)
    assert policy.version == "v1"
    assert [p.name for p in policy.providers] == ["mock-provider", "openai-gpt4"]
    assert policy.providers[0].config == {}
    assert policy.providers[1].config == {"model": "gpt-4o", "temperature": 0.7}
    assert policy.rules[1].condition.any_of[1].event_type == "pcas.user.question.v1"
    assert policy.rules[1].action.prompt_template == "Answer: {{prompt}}"


def test_parsed_policy_routing_first_match_wins():
    engine = PolicyEngine(parse_policy(SAMPLE))
    assert engine.select_provider(Event(type="pcas.echo.v1")) == ("mock-provider", "")
    assert engine.select_provider(Event(type="pcas.user.question.v1")) == (
        "openai-gpt4",
        "Answer: {{prompt}}",
    )


def test_empty_document_gives_empty_policy():
    policy = parse_policy("")
    assert policy == Policy()
    assert PolicyEngine(policy).select_provider(Event(type="x")) == ("", "")


def test_load_policy_from_file(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(SAMPLE, encoding="utf-8")
    assert load_policy(path) == parse_policy(SAMPLE)


def test_load_policy_missing_file(tmp_path):
    with pytest.raises(PolicyError, match="failed to read policy file"):
        load_policy(tmp_path / "absent.yaml")


def test_parse_policy_invalid_yaml():
    with pytest.raises(PolicyError, match="failed to parse policy file"):
        parse_policy("rules: [unclosed")


def test_parse_policy_wrong_shape():
    with pytest.raises(PolicyError, match="failed to parse policy file"):
        parse_policy("rules: just-a-string")
    with pytest.raises(PolicyError):
        parse_policy("- a\n- b\n")