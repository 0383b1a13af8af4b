"""
Parsers turning raw analyzer payloads into result records.

Three wire formats are understood:

* ASTM E1394 records (``H``, ``P``, ``O``, ``R``, ``C``, ``L``), one per
  line, with framing (ENQ/ACK, checksums) already stripped by the connector.
* HL7 v2 ``ORU^R01`` messages, reading ``PID``, ``OBR``/``SPM`` and ``OBX``.
* JSON documents ``{"sample_id": ..., "results": [...]}`` (optionally a
  ``samples`` list of such documents) sent by vendor middleware.

A record that cannot be understood does not abort the message: it comes
back as a :class:`ParsedResult` whose ``error`` is set, so that its
siblings are still staged.  Only a payload that yields nothing usable
raises :class:`lis.exceptions.ParseError`.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .exceptions import ParseError

MAX_CODE = 64
MAX_NAME = 255
MAX_VALUE = 255
MAX_UNIT = 64
MAX_RANGE = 255
MAX_FLAG = 16
MAX_SAMPLE = 64

_FRAME_PREFIX = re.compile(r'^[\x02]?\d(?=[A-Z]\|)')


@dataclass
class ParsedResult:
    sample_id: str = ''
    code: str = ''
    name: str = ''
    value: str = ''
    unit: str = ''
    reference_range: str = ''
    flag: str = ''
    measured_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ParsedMessage:
    protocol: str
    patient_identifier: Optional[str] = None
    results: List[ParsedResult] = field(default_factory=list)

    @property
    def sample_ids(self) -> List[str]:
        seen: List[str] = []
        for r in self.results:
            if r.sample_id and r.sample_id not in seen:
                seen.append(r.sample_id)
        return seen

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


def _clip(value, limit: int) -> str:
    return (str(value).strip() if value is not None else '')[:limit]


def _field(rec: list, idx: int) -> str:
    return rec[idx].strip() if len(rec) > idx and rec[idx] else ''


def parse_instrument_timestamp(text: str) -> Optional[datetime]:
    """``YYYYMMDD[HH[MM[SS]]]`` as sent by ASTM/HL7 instruments."""
    text = (text or '').strip()
    if not text:
        return None
    digits = text.split('+')[0].split('-')[0].split('.')[0]
    for fmt, size in (('%Y%m%d%H%M%S', 14), ('%Y%m%d%H%M', 12),
                      ('%Y%m%d%H', 10), ('%Y%m%d', 8)):
        if len(digits) == size:
            try:
                dt = datetime.strptime(digits, fmt)
            except ValueError:
                break
            return timezone.make_aware(dt) if timezone.is_naive(dt) else dt
    raise ValueError(f"invalid timestamp '{text}'")


def detect_protocol(payload: str) -> str:
    head = payload.lstrip('\x0b\x02 \r\n\t')
    if head.startswith('{') or head.startswith('['):
        return 'json'
    if head.startswith('MSH'):
        return 'hl7'
    return 'astm'


def parse_message(payload: str, protocol: Optional[str] = None) -> ParsedMessage:
    if payload is None or not str(payload).strip():
        raise ParseError('Empty message payload.')
    payload = str(payload)
    protocol = protocol or detect_protocol(payload)
    if protocol == 'json':
        return parse_json(payload)
    if protocol == 'hl7':
        return parse_hl7(payload)
    if protocol == 'astm':
        return parse_astm(payload)
    raise ParseError(f"Unsupported protocol '{protocol}'.")


# ---------------------------------------------------------------------------
# ASTM
# ---------------------------------------------------------------------------

def _astm_records(payload: str) -> List[List[str]]:
    text = payload.replace('\r\n', '\r').replace('\n', '\r')
    records = []
    for line in text.split('\r'):
        line = _FRAME_PREFIX.sub('', line.strip().lstrip('\x02').rstrip('\x03\x17'))
        if line:
            records.append(line.split('|'))
    return records


def _astm_result(rec: List[str], sample_id: str) -> ParsedResult:
    # R|1|^^^WBC^White cells|7.2|10^9/L|4.0-11.0|N||F||||20240101120000
    comps = [c.strip() for c in _field(rec, 2).split('^')]
    if len(comps) > 3:
        code = comps[3]
        name = comps[4] if len(comps) > 4 else ''
    else:
        code = next((c for c in reversed(comps) if c), '')
        name = ''
    res = ParsedResult(
        sample_id=_clip(sample_id, MAX_SAMPLE),
        code=_clip(code, MAX_CODE),
        name=_clip(name, MAX_NAME),
        value=_clip(_field(rec, 3), MAX_VALUE),
        unit=_clip(_field(rec, 4), MAX_UNIT),
        reference_range=_clip(_field(rec, 5), MAX_RANGE),
        flag=_clip(_field(rec, 6), MAX_FLAG),
    )
    if not sample_id:
        res.error = 'Result record precedes any order record (no sample id).'
    elif not res.code:
        res.error = 'Result record has no test code.'
    elif not res.value:
        res.error = f"Result record for '{res.code}' has no value."
    else:
        try:
            res.measured_at = parse_instrument_timestamp(_field(rec, 12))
        except ValueError as e:
            res.error = f"Result record for '{res.code}': {e}."
    return res


def parse_astm(payload: str) -> ParsedMessage:
    msg = ParsedMessage(protocol='astm')
    sample_id = ''
    seen_any = False
    for rec in _astm_records(payload):
        rtype = rec[0].strip().upper()[:1]
        if rtype in ('H', 'L', 'C', 'Q'):
            seen_any = True
        elif rtype == 'P':
            seen_any = True
            # patient id sits in P-3..P-5 depending on the instrument
            msg.patient_identifier = next((v.strip() for v in rec[2:6] if v and v.strip()), None)
        elif rtype == 'O':
            seen_any = True
            # specimen id is O-3 on most analyzers, O-4 on a few
            sample_id = _field(rec, 2).split('^')[0] or _field(rec, 3).split('^')[0]
        elif rtype == 'R':
            seen_any = True
            msg.results.append(_astm_result(rec, sample_id))
    if not seen_any:
        raise ParseError('No ASTM records found in payload.')
    if not msg.results:
        raise ParseError('ASTM message contains no result records.')
    return msg


# ---------------------------------------------------------------------------
# HL7 v2
# ---------------------------------------------------------------------------

def _hl7_result(seg: List[str], sample_id: str) -> ParsedResult:
    # OBX|1|NM|WBC^White cells||7.2|10^9/L|4.0-11.0|N|||F|||20240101120000
    ident = _field(seg, 3).split('^')
    res = ParsedResult(
        sample_id=_clip(sample_id, MAX_SAMPLE),
        code=_clip(ident[0] if ident else '', MAX_CODE),
        name=_clip(ident[1] if len(ident) > 1 else '', MAX_NAME),
        value=_clip(_field(seg, 5), MAX_VALUE),
        unit=_clip(_field(seg, 6).split('^')[0], MAX_UNIT),
        reference_range=_clip(_field(seg, 7), MAX_RANGE),
        flag=_clip(_field(seg, 8), MAX_FLAG),
    )
    if not sample_id:
        res.error = 'OBX segment precedes any OBR/SPM segment (no sample id).'
    elif not res.code:
        res.error = 'OBX segment has no observation identifier.'
    elif not res.value:
        res.error = f"OBX segment for '{res.code}' has no value."
    else:
        try:
            res.measured_at = parse_instrument_timestamp(_field(seg, 14))
        except ValueError as e:
            res.error = f"OBX segment for '{res.code}': {e}."
    return res


def parse_hl7(payload: str) -> ParsedMessage:
    text = payload.strip('\x0b\x1c\r\n ').replace('\r\n', '\r').replace('\n', '\r')
    segments = [s.split('|') for s in text.split('\r') if s.strip()]
    if not segments or segments[0][0].strip() != 'MSH':
        raise ParseError('HL7 message does not start with an MSH segment.')
    msg = ParsedMessage(protocol='hl7')
    sample_id = ''
    for seg in segments[1:]:
        name = seg[0].strip()
        if name == 'PID':
            msg.patient_identifier = _field(seg, 3).split('^')[0] or None
        elif name == 'OBR':
            # filler order number, falling back to placer order number
            sample_id = _field(seg, 3).split('^')[0] or _field(seg, 2).split('^')[0]
        elif name == 'SPM':
            sample_id = _field(seg, 2).split('^')[0] or sample_id
        elif name == 'OBX':
            msg.results.append(_hl7_result(seg, sample_id))
    if not msg.results:
        raise ParseError('HL7 message contains no OBX segments.')
    return msg


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def _json_result(item, sample_id: str) -> ParsedResult:
    if not isinstance(item, dict):
        return ParsedResult(sample_id=_clip(sample_id, MAX_SAMPLE), error='Result entry is not an object.')
    sample_id = item.get('sample_id') or sample_id
    res = ParsedResult(
        sample_id=_clip(sample_id, MAX_SAMPLE),
        code=_clip(item.get('code') or item.get('test_code'), MAX_CODE),
        name=_clip(item.get('name') or item.get('test_name'), MAX_NAME),
        value=_clip(item.get('value') if item.get('value') is not None else item.get('result'), MAX_VALUE),
        unit=_clip(item.get('unit'), MAX_UNIT),
        reference_range=_clip(item.get('reference_range'), MAX_RANGE),
        flag=_clip(item.get('flag'), MAX_FLAG),
    )
    if not res.sample_id:
        res.error = 'Result entry has no sample id.'
    elif not res.code:
        res.error = 'Result entry has no test code.'
    elif not res.value:
        res.error = f"Result entry for '{res.code}' has no value."
    elif item.get('measured_at'):
        try:
            dt = parse_datetime(str(item['measured_at']))
        except ValueError:
            dt = None
        if dt is None:
            res.error = f"Result entry for '{res.code}': invalid timestamp '{item['measured_at']}'."
        else:
            res.measured_at = timezone.make_aware(dt) if timezone.is_naive(dt) else dt
    return res


def parse_json(payload: str) -> ParsedMessage:
    try:
        doc = json.loads(payload)
    except ValueError as e:
        raise ParseError(f'Invalid JSON payload: {e}')
    if isinstance(doc, list):
        doc = {'samples': doc}
    if not isinstance(doc, dict):
        raise ParseError('JSON payload must be an object or a list of samples.')
    msg = ParsedMessage(protocol='json', patient_identifier=doc.get('patient_id'))
    samples = doc.get('samples') if isinstance(doc.get('samples'), list) else [doc]
    for sample in samples:
        if not isinstance(sample, dict):
            msg.results.append(ParsedResult(error='Sample entry is not an object.'))
            continue
        items = sample.get('results')
        if not isinstance(items, list):
            continue
        for item in items:
            msg.results.append(_json_result(item, sample.get('sample_id') or ''))
    if not msg.results:
        raise ParseError('JSON payload contains no results.')
    return msg
