"""Report card computation: grade bands, class positions and annual aggregates."""

from dataclasses import dataclass, field
from typing import Optional

from school_records import (
    CONDUCT_SUBJECT_ID, FINAL_TERM, SUBJECTS, TERMS, UNKNOWN_SUBJECT_LABEL,
    RecordNotFound, get_promotion_decision, get_student, get_student_marks,
    get_student_year_marks, get_students_by_class,
)

# (minimum score, grade, label), highest band first.
GRADE_BANDS = (
    (90, 'A', 'Excellent'),
    (70, 'B', 'Very Good'),
    (50, 'C', 'Good'),
    (0, 'D', 'Fail'),
)

PROMOTION_AUTOMATIC = 'automatic'
PROMOTION_MANUAL = 'manual'
PROMOTION_MODES = (PROMOTION_AUTOMATIC, PROMOTION_MANUAL)
PROMOTION_THRESHOLD = 50


class StudentNotFound(RecordNotFound):
    pass


@dataclass
class Report:
    student: dict
    marks: list
    year: str
    term: str
    position: Optional[int]
    total_students: int
    subject_rows: list = field(default_factory=list)
    annual_stats: Optional[dict] = None
    summary: Optional[str] = None

    @property
    def is_final_term(self):
        return is_final_term(self.term)

    def to_dict(self):
        data = {
            'student': self.student,
            'marks': self.marks,
            'year': self.year,
            'term': self.term,
            'position': self.position,
            'totalStudents': self.total_students,
            'subjectRows': self.subject_rows,
        }
        if self.annual_stats is not None:
            data['annualStats'] = self.annual_stats
        if self.summary is not None:
            data['summary'] = self.summary
        return data


def is_final_term(term):
    return term == FINAL_TERM


def grade_for_score(score):
    """Map a 0-100 score to its grade band."""
    value = float(score or 0)
    for minimum, grade, label in GRADE_BANDS:
        if value >= minimum:
            return {'grade': grade, 'label': label}
    return {'grade': GRADE_BANDS[-1][1], 'label': GRADE_BANDS[-1][2]}


def subject_name(subject_id):
    for subject in SUBJECTS:
        if subject['id'] == subject_id:
            return subject['name']
    return UNKNOWN_SUBJECT_LABEL


def ordinal(value):
    """Return ordinal string for an integer (e.g., 1 -> 1st)."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return str(value)
    abs_n = abs(n)
    if 10 <= (abs_n % 100) <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(abs_n % 10, 'th')
    return f"{n}{suffix}"


def ranking_total(marks):
    """Sum of scores, leaving out the conduct subject."""
    return sum(int(m.get('score') or 0) for m in marks if m.get('subjectId') != CONDUCT_SUBJECT_ID)


def calculate_positions(store, class_name, year, term):
    """
    Rank every student of a class by descending non-conduct total for one term.

    Equal totals keep roster order (the student stored first ranks higher), so
    positions are always a permutation of 1..N.
    """
    class_students = get_students_by_class(store, class_name)
    totals = [
        (s.get('id'), ranking_total(get_student_marks(store, s.get('id'), year, term)))
        for s in class_students
    ]
    ordered = sorted(totals, key=lambda item: item[1], reverse=True)
    positions = {}
    for pos, (sid, total) in enumerate(ordered, 1):
        positions[sid] = {'pos': pos, 'size': len(ordered), 'total': total}
    return positions


def promotion_decision(average, mode=PROMOTION_AUTOMATIC, manual_decision=''):
    if mode == PROMOTION_MANUAL:
        return manual_decision or ''
    return 'Promoted' if average >= PROMOTION_THRESHOLD else 'Advised to repeat'


def calculate_annual_stats(year_marks, mode=PROMOTION_AUTOMATIC, manual_decision=''):
    counted = [m for m in year_marks if m.get('subjectId') != CONDUCT_SUBJECT_ID]
    total = sum(int(m.get('score') or 0) for m in counted)
    average = total / len(counted) if counted else 0
    return {
        'totalScore': total,
        'averageScore': f'{average:.1f}',
        'decision': promotion_decision(average, mode, manual_decision),
    }


def _graded(score):
    if score is None:
        return None
    return dict(score=score, **grade_for_score(score))


def build_subject_rows(enriched_marks, term):
    """One row per catalog subject; the final term carries T1-T3 and the annual mean."""
    rows = []
    for subject in SUBJECTS:
        subject_marks = [m for m in enriched_marks if m['subjectId'] == subject['id']]
        if not is_final_term(term):
            mark = next((m for m in subject_marks if m.get('term') == term), None)
            rows.append({
                'subjectId': subject['id'],
                'subjectName': subject['name'],
                'result': _graded(mark['score'] if mark else None),
            })
            continue

        by_term = {}
        for t in TERMS:
            mark = next((m for m in subject_marks if m.get('term') == t), None)
            by_term[t] = _graded(mark['score'] if mark else None)
        available = [r['score'] for r in by_term.values() if r is not None]
        annual = sum(available) / len(available) if available else None
        rows.append({
            'subjectId': subject['id'],
            'subjectName': subject['name'],
            'terms': by_term,
            'annual': _graded(annual),
        })
    return rows


def build_report(store, student_id, year, term, promotion_mode=PROMOTION_AUTOMATIC, summarizer=None):
    """
    Assemble the report card for one student, year and term. Pure read of the store.

    ``summarizer(student, marks, term)`` fills ``Report.summary`` when given.
    """
    student = get_student(store, student_id)
    if not student:
        raise StudentNotFound(f'Student {student_id} not found')

    raw_marks = list(get_student_marks(store, student_id, year, term))
    if is_final_term(term):
        for earlier in TERMS[:-1]:
            raw_marks.extend(get_student_marks(store, student_id, year, earlier))
    enriched = [dict(m, subjectName=subject_name(m.get('subjectId'))) for m in raw_marks]

    positions = calculate_positions(store, student.get('className'), year, term)
    position = positions.get(student_id, {}).get('pos')

    annual_stats = None
    if is_final_term(term):
        manual = get_promotion_decision(store, student_id, year) if promotion_mode == PROMOTION_MANUAL else ''
        annual_stats = calculate_annual_stats(
            get_student_year_marks(store, student_id, year),
            mode=promotion_mode,
            manual_decision=manual,
        )

    return Report(
        student=student,
        marks=enriched,
        year=year,
        term=term,
        position=position,
        total_students=len(positions),
        subject_rows=build_subject_rows(enriched, term),
        annual_stats=annual_stats,
        summary=summarizer(student, enriched, term) if summarizer else None,
    )
