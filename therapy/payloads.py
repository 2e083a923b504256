"""
请求数据的边界校验。

所有外部输入（HTTP body / query）先经过这里：
  - 日期字符串 → date
  - 状态字符串 → 对应 TextChoices，未知取值直接拒绝
  - 只保留调用方实际提交的字段，方便 service 层做部分更新

校验失败统一抛 ValidationError，detail 里带所有字段错误。
"""

import uuid
from datetime import date, datetime

from django.utils.dateparse import parse_date as django_parse_date
from django.utils.dateparse import parse_datetime as django_parse_datetime

from .exceptions import ValidationError
from .models import Dose, Treatment
from .scheduling import to_local_date


class _Errors:
    """收集字段错误，最后一次性抛出。"""

    def __init__(self):
        self.items = []

    def add(self, field, message):
        self.items.append({'field': field, 'message': message})

    def raise_if_any(self):
        if self.items:
            raise ValidationError(
                message='Request validation failed.',
                code='VALIDATION_ERROR',
                detail={'errors': self.items},
            )


# ── 单字段解析 ─────────────────────────────────────────────────────────────

def parse_date(value, field='date'):
    """接受 date / datetime / 'YYYY-MM-DD' / ISO 8601 datetime 字符串。"""
    if isinstance(value, (date, datetime)):
        return to_local_date(value)

    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = django_parse_date(text)
            if parsed is not None:
                return parsed
            parsed_dt = django_parse_datetime(text)
            if parsed_dt is not None:
                return to_local_date(parsed_dt)
        except ValueError:
            pass

    raise ValidationError(
        message=f'Invalid date for {field}: {value!r}. Use YYYY-MM-DD.',
        code='INVALID_DATE',
        detail={'field': field, 'value': value},
    )


def parse_choice(value, choices, field='status'):
    if isinstance(value, str) and value in choices.values:
        return choices(value)
    raise ValidationError(
        message=f'Invalid value for {field}: {value!r}.',
        code='INVALID_CHOICE',
        detail={'field': field, 'allowed': list(choices.values)},
    )


def parse_int(value, field, minimum=None):
    if isinstance(value, bool):
        value = None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            message=f'{field} must be an integer.',
            code='INVALID_INTEGER',
            detail={'field': field, 'value': value},
        )
    if isinstance(value, float) and value != number:
        raise ValidationError(
            message=f'{field} must be an integer.',
            code='INVALID_INTEGER',
            detail={'field': field, 'value': value},
        )
    if minimum is not None and number < minimum:
        raise ValidationError(
            message=f'{field} must be >= {minimum}.',
            code='INVALID_INTEGER',
            detail={'field': field, 'value': value, 'minimum': minimum},
        )
    return number


def _optional(value, parser, *args, **kwargs):
    if value is None or value == '':
        return None
    return parser(value, *args, **kwargs)


def _collect(errors, data, field, parser, *args, **kwargs):
    """data 里有 field 时解析并返回 (True, value)；出错记进 errors。"""
    if field not in data:
        return False, None
    try:
        return True, parser(data[field], *args, **kwargs)
    except ValidationError as exc:
        errors.add(field, exc.message)
        return False, None


# ── 剂次 ────────────────────────────────────────────────────────────────────

_DOSE_FIELDS = (
    ('application_date', parse_date, ('application_date',)),
    ('scheduled_date', parse_date, ('scheduled_date',)),
    ('status', parse_choice, (Dose.Status, 'status')),
    ('payment_status', parse_choice, (Dose.PaymentStatus, 'payment_status')),
    ('survey_status', parse_choice, (Dose.SurveyStatus, 'survey_status')),
)


def _parse_dose_fields(data, errors):
    if not isinstance(data, dict):
        raise ValidationError(message='Request body must be a JSON object.', code='INVALID_BODY')

    cleaned = {}
    for field, parser, args in _DOSE_FIELDS:
        present, value = _collect(errors, data, field, parser, *args)
        if present:
            cleaned[field] = value

    present, lot_id = _collect(errors, data, 'inventory_lot_id', _optional, parse_uuid, 'inventory_lot_id')
    if present:
        cleaned['inventory_lot_id'] = lot_id

    if 'nurse' in data:
        cleaned['nurse'] = bool(data['nurse'])

    present, score = _collect(errors, data, 'survey_score', _optional, parse_int, 'survey_score', 0)
    if present:
        cleaned['survey_score'] = score
    if 'survey_comment' in data:
        cleaned['survey_comment'] = data['survey_comment'] or None

    return cleaned


def parse_dose_create(data):
    errors = _Errors()
    cleaned = _parse_dose_fields(data, errors)

    if 'application_date' not in data:
        errors.add('application_date', 'This field is required.')

    present, cycle = _collect(errors, data, 'cycle_number', _optional, parse_int, 'cycle_number', 1)
    if present and cycle is not None:
        cleaned['cycle_number'] = cycle

    errors.raise_if_any()
    return cleaned


def parse_dose_update(data):
    errors = _Errors()
    cleaned = _parse_dose_fields(data, errors)
    if isinstance(data, dict) and 'cycle_number' in data:
        errors.add('cycle_number', 'cycle_number cannot be changed after creation.')
    errors.raise_if_any()
    return cleaned


def parse_survey_update(data):
    errors = _Errors()
    cleaned = _parse_dose_fields(data, errors)
    errors.raise_if_any()
    return {
        key: value for key, value in cleaned.items()
        if key in ('survey_status', 'survey_score', 'survey_comment')
    }


# ── 疗程 ────────────────────────────────────────────────────────────────────

def parse_treatment_update(data):
    if not isinstance(data, dict):
        raise ValidationError(message='Request body must be a JSON object.', code='INVALID_BODY')

    errors = _Errors()
    cleaned = {}

    present, value = _collect(errors, data, 'status', parse_choice, Treatment.Status, 'status')
    if present:
        cleaned['status'] = value
    present, value = _collect(errors, data, 'start_date', parse_date, 'start_date')
    if present:
        cleaned['start_date'] = value
    present, value = _collect(errors, data, 'next_consultation_date', _optional, parse_date, 'next_consultation_date')
    if present:
        cleaned['next_consultation_date'] = value
    present, value = _collect(
        errors, data, 'planned_doses_before_consult', parse_int, 'planned_doses_before_consult', 0,
    )
    if present:
        cleaned['planned_doses_before_consult'] = value
    if 'observations' in data:
        cleaned['observations'] = data['observations'] or None

    errors.raise_if_any()
    return cleaned


# ── 随访反馈 ────────────────────────────────────────────────────────────────

def parse_feedback(feedback):
    """
    {text, classification, needs_medical_response, urgency, status} → DismissedLog 字段。
    """
    if feedback is None:
        return {}
    if not isinstance(feedback, dict):
        raise ValidationError(message='feedback must be an object.', code='INVALID_FEEDBACK')

    status = feedback.get('status')
    if status not in (None, 'pending', 'resolved'):
        raise ValidationError(
            message=f'Invalid feedback status: {status!r}.',
            code='INVALID_FEEDBACK',
            detail={'allowed': [None, 'pending', 'resolved']},
        )

    needs_medical = feedback.get('needs_medical_response')
    return {
        'feedback_text': feedback.get('text') or None,
        'feedback_classification': feedback.get('classification') or None,
        'feedback_needs_medical': None if needs_medical is None else bool(needs_medical),
        'feedback_urgency': feedback.get('urgency') or None,
        'feedback_status': status,
    }


def parse_days(value, default=7):
    if value is None or value == '':
        return default
    return parse_int(value, 'days', 0)


def parse_uuid(value, field='id'):
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(
            message=f'Invalid id for {field}: {value!r}.',
            code='INVALID_ID',
            detail={'field': field, 'value': value},
        )


def parse_body(data):
    """JSON body 必须是对象；数组 / 标量直接拒绝。"""
    if not isinstance(data, dict):
        raise ValidationError(message='Request body must be a JSON object.', code='INVALID_BODY')
    return data
