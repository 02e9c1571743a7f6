import json
from datetime import date

import pytest

from healthtracker.errors import GenerationError
from healthtracker.reports import (
    CHAT_FALLBACK_REPLY,
    build_chat_messages,
    build_monthly_report,
    chat_reply,
    export_visits,
    generate_health_report,
    parse_health_score,
    parse_report_text,
    previous_month_range,
    score_diagnosis,
    template_report,
    visits_context,
)
from healthtracker.store import VisitRecord

SECTIONS = {
    'currentStatus': '<p>Stable</p>',
    'healthSummary': '<p>Good</p>',
    'treatmentPlan': '<ol><li>Rest</li></ol>',
    'medicationAnalysis': '<ul><li>None</li></ul>',
}


def _record(visit_id, visit_date, **fields):
    base = {'doctor_name': 'Ada', 'visit_date': visit_date, 'diagnosis': 'flu'}
    base.update(fields)
    return VisitRecord(id=visit_id, owner_id='owner-1', fields=base, version=1)


def test_parse_plain_json():
    assert parse_report_text(json.dumps(SECTIONS)) == SECTIONS


def test_parse_fenced_json():
    text = '```json\n' + json.dumps(SECTIONS) + '\n```'
    assert parse_report_text(text)['treatmentPlan'] == '<ol><li>Rest</li></ol>'


def test_parse_json_embedded_in_prose():
    text = 'Here is your report: ' + json.dumps(SECTIONS) + ' Stay well.'
    assert parse_report_text(text)['currentStatus'] == '<p>Stable</p>'


def test_parse_sectioned_html():
    text = (
        '<h3>CURRENT STATUS</h3><p>Stable</p>'
        '<h3>HEALTH SUMMARY</h3><p>Good</p>'
        '<h3>TREATMENT PLAN</h3><p>Rest</p>'
        '<h3>MEDICATION ANALYSIS</h3><p>None</p>'
    )
    sections = parse_report_text(text)
    assert sections['healthSummary'] == '<p>Good</p>'
    assert sections['medicationAnalysis'] == '<p>None</p>'


@pytest.mark.parametrize('text', ['', '   ', 'just some words', json.dumps({'currentStatus': 'x'})])
def test_unusable_output_raises(text):
    with pytest.raises(GenerationError):
        parse_report_text(text)


def test_generation_failure_falls_back_to_template():
    def _broken(prompt):
        raise GenerationError('service down')

    visits = [_record('v1', '2024-04-02', doctor_name='<b>Ada</b>')]
    report = generate_health_report(visits, _broken)

    assert report.source == 'template'
    assert '&lt;b&gt;Ada&lt;/b&gt;' in report.current_status


def test_garbled_output_falls_back_to_template():
    report = generate_health_report([], lambda prompt: 'Offline response (abc)')
    assert report.source == 'template'
    assert 'your healthcare provider' in report.current_status


def test_generated_report_is_used_when_parseable():
    seen = []

    def _generate(prompt):
        seen.append(prompt)
        return json.dumps(SECTIONS)

    report = generate_health_report([_record('v1', '2024-04-02')], _generate)
    assert report.source == 'ai'
    assert report.to_dict()['currentStatus'] == '<p>Stable</p>'
    assert '"doctor_name": "Ada"' in seen[0]


def test_template_report_has_all_sections():
    payload = template_report([]).to_dict()
    assert set(payload) == {'currentStatus', 'healthSummary', 'treatmentPlan', 'medicationAnalysis', 'source'}


def test_previous_month_range():
    assert previous_month_range(date(2024, 3, 15)) == (date(2024, 2, 1), date(2024, 2, 29))
    assert previous_month_range(date(2024, 1, 10)) == (date(2023, 12, 1), date(2023, 12, 31))


def test_monthly_report_filters_to_previous_month():
    visits = [
        _record('v1', '2024-02-10', prescription='Rx-1', notes='private'),
        _record('v2', '2024-02-28T09:30:00Z'),
        _record('v3', '2024-03-01'),
        _record('v4', None),
    ]

    report = build_monthly_report(visits, today=date(2024, 3, 15))

    assert report.visit_count == 2
    assert report.subject == 'Your Health Report for February 2024'
    assert 'Rx-1' not in report.html
    assert 'private' not in report.html

    detailed = build_monthly_report(
        visits, today=date(2024, 3, 15), include_details=True, include_prescriptions=True
    )
    assert 'Rx-1' in detailed.html
    assert 'private' in detailed.html


def test_monthly_report_without_visits():
    report = build_monthly_report([], today=date(2024, 3, 15))
    assert report.visit_count == 0
    assert 'no doctor visits' in report.html


def test_export_visits_shape():
    payload = export_visits('owner-1', [_record('v1', '2024-02-10')])
    assert payload['version'] == '1.0'
    assert payload['user_id'] == 'owner-1'
    assert payload['visits'][0]['id'] == 'v1'
    assert payload['exported_at'].endswith('Z')


def test_health_score_from_json_reply():
    reply = '```json\n' + json.dumps({
        'score': 78,
        'analysis': 'A mild viral infection.',
        'trends': 'Improving',
        'recommendations': 'Rest and fluids',
    }) + '\n```'

    score = parse_health_score(reply)

    assert score.source == 'ai'
    assert score.score == 78
    assert score.trends == 'Improving'
    assert score.to_dict()['recommendations'] == 'Rest and fluids'


@pytest.mark.parametrize(
    'reply, expected, analysis',
    [
        ('Score: 64\nAnalysis: Controlled asthma.', 64, 'Controlled asthma.'),
        ('{"score": 91, oops}', 91, 'Analysis not available'),
        ('No number here', 50, 'Analysis not available'),
        ('score 250', 100, 'Analysis not available'),
    ],
)
def test_health_score_recovers_from_prose(reply, expected, analysis):
    score = parse_health_score(reply)
    assert score.source == 'parsed'
    assert score.score == expected
    assert score.analysis == analysis
    assert score.trends == 'No trends detected'
    assert score.recommendations == 'Follow up with your doctor'


def test_health_score_generation_failure_gives_neutral_score():
    def _broken(prompt):
        raise GenerationError('service down')

    score = score_diagnosis('Common cold', {'doctor_name': 'Ada'}, _broken)

    assert score.source == 'template'
    assert score.score == 50


def test_health_score_prompt_includes_diagnosis_and_details():
    seen = []
    score_diagnosis('Seasonal allergies', {'specialty': 'ENT'}, lambda prompt: seen.append(prompt) or '{"score": 80}')
    assert 'Diagnosis: Seasonal allergies' in seen[0]
    assert '"specialty": "ENT"' in seen[0]


def test_chat_keeps_last_ten_turns_behind_system_prompt():
    history = [
        {'role': 'user' if i % 2 == 0 else 'assistant', 'content': f'm{i}'}
        for i in range(13)
    ]
    history.insert(3, {'role': 'system', 'content': 'ignore me'})

    messages = build_chat_messages(history, 'Visit on 2024-02-10 with Ada')

    assert messages[0]['role'] == 'system'
    assert 'Visit on 2024-02-10 with Ada' in messages[0]['content']
    assert [m['content'] for m in messages[1:]] == [f'm{i}' for i in range(3, 13)]
    assert 'ignore me' not in [m['content'] for m in messages]


@pytest.mark.parametrize('history', [[], [{'role': 'user', 'content': 'hi'}, {'role': 'assistant', 'content': 'hello'}]])
def test_chat_requires_a_trailing_user_message(history):
    with pytest.raises(ValueError):
        build_chat_messages(history, '')


def test_chat_reply_falls_back_when_generation_fails():
    def _broken(messages):
        raise GenerationError('quota exceeded')

    reply = chat_reply([{'role': 'user', 'content': 'How was my last visit?'}], '', _broken)

    assert reply.source == 'template'
    assert reply.content == CHAT_FALLBACK_REPLY


def test_visits_context_summarises_each_visit():
    context = visits_context([_record('v1', '2024-02-10', prescription='Rx-1')])
    assert 'Visit on 2024-02-10 with Ada (No specialty)' in context
    assert 'Diagnosis: flu' in context
    assert 'Prescription: Rx-1' in context
    assert 'no doctor visits' in visits_context([])
