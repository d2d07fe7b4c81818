"""Trimester GPA and cumulative CGPA on the university's 4.00 scale."""

# letter -> (grade point, min marks, max marks, assessment)
GRADING_SYSTEM = [
    ('A', 4.00, 90, 100, 'Outstanding'),
    ('A-', 3.67, 86, 89, 'Excellent'),
    ('B+', 3.33, 82, 85, 'Very Good'),
    ('B', 3.00, 78, 81, 'Good'),
    ('B-', 2.67, 74, 77, 'Above Average'),
    ('C+', 2.33, 70, 73, 'Average'),
    ('C', 2.00, 66, 69, 'Below Average'),
    ('C-', 1.67, 62, 65, 'Poor'),
    ('D+', 1.33, 58, 61, 'Very Poor'),
    ('D', 1.00, 55, 57, 'Pass'),
    ('F', 0.00, 0, 54, 'Fail'),
]

GRADE_POINTS = {letter: point for letter, point, _, _, _ in GRADING_SYSTEM}

PASSING_POINT = 1.0

# Class tests count as the average of the best few
BEST_CT_COUNT = 3


def grade_point(letter):
    return GRADE_POINTS.get(letter, 0.0)


def grade_for_marks(marks):
    """Letter grade for a percentage mark (rounded to the nearest whole mark)."""
    marks = round(marks)
    for letter, _, low, high, _ in GRADING_SYSTEM:
        if low <= marks <= high:
            return letter
    return 'A' if marks > 100 else 'F'


def assessment_marks(assessments, best_ct=BEST_CT_COUNT):
    """Weighted marks and the weight they cover, as ``(marks, weight)``.

    Regular assessments add ``obtained / total * weight``. Class tests are ranked by
    percentage and the best ``best_ct`` are averaged into a single component.
    """
    marks = weight = 0.0
    class_tests = []
    for a in assessments or []:
        if a.get('is_ct'):
            class_tests.append(a)
            continue
        weight += a['weight']
        if a['total_marks'] > 0:
            marks += a['obtained_marks'] / a['total_marks'] * a['weight']

    class_tests.sort(key=lambda a: a['obtained_marks'] / (a['total_marks'] or 1), reverse=True)
    best = class_tests[:best_ct]
    if best:
        weight += sum(a['weight'] for a in best) / len(best)
        marks += sum(
            a['obtained_marks'] / a['total_marks'] * a['weight'] for a in best if a['total_marks'] > 0
        ) / len(best)
    return marks, weight


def course_grade(course):
    """The entered letter grade, else the grade projected from the course's assessments."""
    if course.get('grade'):
        return course['grade']
    marks, weight = assessment_marks(course.get('assessments'))
    if weight <= 0:
        return None
    return grade_for_marks(marks / weight * 100)


def trimester_gpa(courses):
    """GPA = sum(credit * point) / sum(credit) over graded, non-zero-credit courses."""
    total_credits = 0.0
    total_points = 0.0
    earned_credits = 0.0
    for course in courses:
        credit = course.get('credit') or 0
        grade = course_grade(course)
        if credit <= 0 or not grade:
            continue
        point = grade_point(grade)
        total_credits += credit
        total_points += credit * point
        if point >= PASSING_POINT:
            earned_credits += credit

    gpa = total_points / total_credits if total_credits > 0 else 0.0
    return {
        'gpa': round(gpa, 2),
        'total_credits': total_credits,
        'earned_credits': earned_credits,
        'total_points': total_points,
    }


def calculate_cgpa(trimesters, previous_credits=0.0, previous_cgpa=0.0):
    """Per-trimester GPA and running CGPA, seeded with credits/CGPA completed before tracking began.

    A retaken course replaces an earlier attempt whose grade is unknown here, so its
    credits are not added to the cumulative total a second time; its new points are.
    """
    results = []
    cumulative_credits = previous_credits
    cumulative_points = previous_credits * previous_cgpa
    cumulative_earned = previous_credits

    for trimester in trimesters:
        courses = trimester.get('courses', [])
        term = trimester_gpa(courses)
        retake_credits = sum(
            c.get('credit') or 0 for c in courses
            if c.get('is_retake') and (c.get('credit') or 0) > 0 and course_grade(c)
        )

        cumulative_credits += term['total_credits'] - retake_credits
        cumulative_points += term['total_points']
        cumulative_earned += term['earned_credits']
        cgpa = cumulative_points / cumulative_credits if cumulative_credits > 0 else 0.0

        results.append({
            'trimester_name': trimester.get('name') or trimester.get('code', ''),
            'trimester_code': trimester.get('code', ''),
            'gpa': term['gpa'],
            'cgpa': round(cgpa, 2),
            'trimester_credits': term['total_credits'],
            'total_credits': cumulative_credits,
            'earned_credits': cumulative_earned,
        })
    return results
