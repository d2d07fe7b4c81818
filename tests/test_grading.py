import pytest

from grading import assessment_marks, calculate_cgpa, course_grade, grade_for_marks, grade_point, trimester_gpa


def course(credit, grade, **extra):
    return dict({'credit': credit, 'grade': grade}, **extra)


def test_grade_points():
    assert grade_point('A') == 4.0
    assert grade_point('B+') == 3.33
    assert grade_point('F') == 0.0
    assert grade_point('Z') == 0.0


@pytest.mark.parametrize('marks,letter', [(95, 'A'), (90, 'A'), (89.6, 'A'), (86, 'A-'), (55, 'D'), (54, 'F'), (0, 'F')])
def test_grade_for_marks(marks, letter):
    assert grade_for_marks(marks) == letter


def test_trimester_gpa():
    result = trimester_gpa([course(3, 'A'), course(3, 'B'), course(1, 'F'), course(0, 'A'), course(3, None)])
    # (3*4 + 3*3 + 1*0) / 7
    assert result['gpa'] == 3.0
    assert result['total_credits'] == 7
    assert result['earned_credits'] == 6


def test_trimester_gpa_without_graded_courses():
    assert trimester_gpa([])['gpa'] == 0.0


def test_cgpa_accumulates_over_trimesters():
    trimesters = [
        {'name': 'Spring 2025', 'code': '251', 'courses': [course(3, 'A'), course(3, 'C')]},
        {'name': 'Summer 2025', 'code': '252', 'courses': [course(3, 'B')]},
    ]
    results = calculate_cgpa(trimesters)
    assert [r['gpa'] for r in results] == [3.0, 3.0]
    assert results[1]['cgpa'] == 3.0
    assert results[1]['total_credits'] == 9
    assert results[0]['trimester_name'] == 'Spring 2025'


def test_cgpa_seeded_with_previous_record():
    results = calculate_cgpa([{'code': '253', 'courses': [course(3, 'A')]}], previous_credits=9, previous_cgpa=3.0)
    # (27 + 12) / 12
    assert results[0]['cgpa'] == 3.25
    assert results[0]['trimester_name'] == '253'


def test_retake_credits_not_counted_twice():
    results = calculate_cgpa(
        [{'code': '253', 'courses': [course(3, 'A', is_retake=True, previous_grade='F')]}],
        previous_credits=9, previous_cgpa=3.0,
    )
    assert results[0]['total_credits'] == 9
    assert results[0]['cgpa'] == round((27 + 12) / 9, 2)


def assessment(obtained, total, weight, is_ct=False):
    return {'name': '', 'obtained_marks': obtained, 'total_marks': total, 'weight': weight, 'is_ct': is_ct}


FULL_COURSE = [
    assessment(5, 5, 5),
    assessment(5, 5, 5),
    assessment(24, 30, 30),
    assessment(32, 40, 40),
    # best three of four class tests: 100%, 90%, 80%
    assessment(18, 20, 20, is_ct=True),
    assessment(16, 20, 20, is_ct=True),
    assessment(10, 20, 20, is_ct=True),
    assessment(20, 20, 20, is_ct=True),
]


def test_assessment_marks_average_best_class_tests():
    marks, weight = assessment_marks(FULL_COURSE)
    assert weight == 100
    assert marks == pytest.approx(84)


def test_course_grade_from_assessments():
    assert course_grade(course(3, None, assessments=FULL_COURSE)) == 'B+'
    # an entered grade wins over the marks
    assert course_grade(course(3, 'A', assessments=FULL_COURSE)) == 'A'
    assert course_grade(course(3, None)) is None


def test_partial_assessments_project_over_covered_weight():
    # 27 of the 30 weighted marks entered so far is 90%
    assert course_grade(course(3, None, assessments=[assessment(27, 30, 30)])) == 'A'


def test_trimester_gpa_uses_projected_grade():
    result = trimester_gpa([course(3, None, assessments=FULL_COURSE), course(3, 'A')])
    assert result['gpa'] == round((3 * 3.33 + 3 * 4.0) / 6, 2)
