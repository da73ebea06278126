import pytest

from record_store import STUDENTS_KEY, MemoryRecordStore
from report_card import (
    PROMOTION_MANUAL, StudentNotFound, build_report, calculate_annual_stats, calculate_positions,
    grade_for_score, ordinal,
)
from school_records import MarkEntry, SetScore, ensure_seeded, save_marks_batch, set_promotion_decision

YEAR = "2024-2025"


@pytest.fixture
def store():
    s = MemoryRecordStore("reports")
    ensure_seeded(s)
    s.set(STUDENTS_KEY, [
        {"id": "b", "name": "Bella", "className": "Nursery 2"},
        {"id": "c", "name": "Chris", "className": "Nursery 2"},
        {"id": "a", "name": "Amani", "className": "Nursery 2"},
        {"id": "z", "name": "Zawadi", "className": "Nursery 3"},
    ])
    return s


def _save(store, student_id, scores, term="Term 1", year=YEAR):
    save_marks_batch(store, [
        MarkEntry(student_id, subject_id, year, term, SetScore(score))
        for subject_id, score in scores.items()
    ])


@pytest.mark.parametrize("score,grade,label", [
    (100, "A", "Excellent"),
    (90, "A", "Excellent"),
    (89, "B", "Very Good"),
    (70, "B", "Very Good"),
    (69.9, "C", "Good"),
    (50, "C", "Good"),
    (49, "D", "Fail"),
    (0, "D", "Fail"),
])
def test_grade_for_score_bands(score, grade, label):
    assert grade_for_score(score) == {"grade": grade, "label": label}


@pytest.mark.parametrize("value,expected", [
    (1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"),
    (11, "11th"), (12, "12th"), (13, "13th"), (21, "21st"), (112, "112th"),
])
def test_ordinal_suffixes(value, expected):
    assert ordinal(value) == expected


def test_positions_break_ties_by_roster_order_and_ignore_conduct(store):
    _save(store, "b", {"numeracy": 100, "literacy": 100, "oral": 100})
    _save(store, "c", {"numeracy": 90, "literacy": 90, "oral": 90})
    _save(store, "a", {"numeracy": 100, "literacy": 100, "oral": 70, "conduct": 100})

    positions = calculate_positions(store, "Nursery 2", YEAR, "Term 1")

    assert {sid: p["pos"] for sid, p in positions.items()} == {"b": 1, "c": 2, "a": 3}
    assert positions["a"]["total"] == 270
    assert all(p["size"] == 3 for p in positions.values())


def test_positions_are_a_permutation_even_without_marks(store):
    _save(store, "c", {"numeracy": 40})
    positions = calculate_positions(store, "Nursery 2", YEAR, "Term 1")
    assert sorted(p["pos"] for p in positions.values()) == [1, 2, 3]
    assert positions["c"]["pos"] == 1


def test_term_report_has_one_row_per_subject(store):
    _save(store, "b", {"numeracy": 95, "oral": 45})
    _save(store, "b", {"numeracy": 10}, term="Term 2")

    report = build_report(store, "b", YEAR, "Term 1")

    assert report.position == 1
    assert report.total_students == 3
    assert report.annual_stats is None
    assert len(report.subject_rows) == 8
    rows = {r["subjectId"]: r for r in report.subject_rows}
    assert rows["numeracy"]["result"] == {"score": 95, "grade": "A", "label": "Excellent"}
    assert rows["oral"]["result"]["grade"] == "D"
    assert rows["literacy"]["result"] is None
    assert {m["term"] for m in report.marks} == {"Term 1"}
    assert "annualStats" not in report.to_dict()


def test_final_term_report_carries_annual_stats(store):
    _save(store, "b", {"numeracy": 80}, term="Term 1")
    _save(store, "b", {"numeracy": 60}, term="Term 2")
    _save(store, "b", {"numeracy": 70, "literacy": 40, "conduct": 100}, term="Term 3")
    _save(store, "b", {"numeracy": 0}, term="Term 1", year="2023-2024")

    report = build_report(store, "b", YEAR, "Term 3")

    assert report.is_final_term
    assert report.annual_stats == {"totalScore": 250, "averageScore": "62.5", "decision": "Promoted"}
    numeracy = next(r for r in report.subject_rows if r["subjectId"] == "numeracy")
    assert numeracy["terms"]["Term 1"]["score"] == 80
    assert numeracy["terms"]["Term 2"]["score"] == 60
    assert numeracy["annual"]["score"] == 70
    assert numeracy["annual"]["grade"] == "B"
    assert report.to_dict()["annualStats"]["decision"] == "Promoted"


def test_annual_stats_below_threshold_and_empty_year():
    low = [{"subjectId": "numeracy", "score": 40}, {"subjectId": "oral", "score": 59}]
    assert calculate_annual_stats(low)["decision"] == "Advised to repeat"
    assert calculate_annual_stats([]) == {"totalScore": 0, "averageScore": "0.0", "decision": "Advised to repeat"}
    assert calculate_annual_stats([{"subjectId": "numeracy", "score": 50}])["decision"] == "Promoted"


def test_manual_promotion_mode_uses_stored_decision(store):
    _save(store, "b", {"numeracy": 20}, term="Term 3")
    assert build_report(store, "b", YEAR, "Term 3", promotion_mode=PROMOTION_MANUAL).annual_stats["decision"] == ""

    set_promotion_decision(store, "b", YEAR, "Promoted elsewhere")
    report = build_report(store, "b", YEAR, "Term 3", promotion_mode=PROMOTION_MANUAL)
    assert report.annual_stats["decision"] == "Promoted elsewhere"


def test_unknown_subject_marks_are_labelled(store):
    _save(store, "z", {"french": 88})
    report = build_report(store, "z", YEAR, "Term 1")
    assert report.marks[0]["subjectName"] == "UNKNOWN SUBJECT"
    assert report.total_students == 1


def test_build_report_unknown_student(store):
    with pytest.raises(StudentNotFound):
        build_report(store, "ghost", YEAR, "Term 1")


def test_summarizer_fills_report_summary(store):
    _save(store, "b", {"numeracy": 91, "oral": 74}, term="Term 2")
    seen = {}

    def summarizer(student, marks, term):
        seen.update(student=student["id"], subjects=sorted(m["subjectName"] for m in marks), term=term)
        return "Bella counts with confidence."

    report = build_report(store, "b", YEAR, "Term 2", summarizer=summarizer)
    assert report.summary == "Bella counts with confidence."
    assert report.to_dict()["summary"] == "Bella counts with confidence."
    assert seen == {"student": "b", "subjects": ["NUMERACY", "ORAL"], "term": "Term 2"}

    assert "summary" not in build_report(store, "b", YEAR, "Term 2").to_dict()
