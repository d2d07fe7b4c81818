from unittest.mock import patch

import pytest
from pymongo.errors import PyMongoError

from ratings import drain_pending_recomputes


def review_body(faculty, alias='Night Owl', ratings=(5, 4, 3, 5), comment='Explains every topic clearly.'):
    teaching, grading, friendliness, availability = ratings
    return {
        "faculty_id": str(faculty['_id']),
        "anonymous_name": alias,
        "course_history": [{"course_code": "CSE 1111", "trimester": "241"}],
        "ratings": {
            "teaching": teaching,
            "grading": grading,
            "friendliness": friendliness,
            "availability": availability,
        },
        "comment": comment,
        "difficulty": "Medium",
        "would_take_again": True,
    }


@pytest.fixture
def faculty(make_faculty):
    return make_faculty()


def test_create_review_updates_aggregate(client, db, faculty, make_user, headers):
    user = make_user()
    resp = client.post('/api/reviews', json=review_body(faculty), headers=headers(user))
    assert resp.status_code == 201
    body = resp.get_json()
    # mean of 5, 4, 3, 5 rounded to one decimal
    assert body['review']['overall_rating'] == 4.3
    assert 'user_id' not in body['review']

    stored = db.faculty.find_one({"_id": faculty['_id']})
    assert stored['total_reviews'] == 1
    assert stored['average_rating'] == 4.3
    assert stored['rating_breakdown']['teaching'] == 5


def test_one_review_per_faculty(client, faculty, make_user, headers):
    user = make_user()
    client.post('/api/reviews', json=review_body(faculty), headers=headers(user))
    resp = client.post('/api/reviews', json=review_body(faculty, alias='Other Alias'), headers=headers(user))
    assert resp.status_code == 409


def test_anonymous_name_unique_case_insensitive(client, faculty, make_faculty, make_user, headers):
    client.post('/api/reviews', json=review_body(faculty), headers=headers(make_user()))
    other_faculty = make_faculty(initials='XYZ', name='Xavier Young')
    resp = client.post('/api/reviews', json=review_body(other_faculty, alias='night owl'), headers=headers(make_user()))
    assert resp.status_code == 409


def test_review_for_missing_faculty(client, make_user, headers):
    body = review_body({'_id': '64b7f0c2a1b2c3d4e5f60718'})
    assert client.post('/api/reviews', json=body, headers=headers(make_user())).status_code == 404


def test_update_review_recomputes(client, db, faculty, make_user, headers):
    user = make_user()
    review_id = client.post('/api/reviews', json=review_body(faculty), headers=headers(user)).get_json()['review']['_id']
    update = {k: v for k, v in review_body(faculty, ratings=(1, 1, 1, 1)).items()
              if k not in ('faculty_id', 'anonymous_name')}

    resp = client.put(f'/api/reviews/{review_id}', json=update, headers=headers(user))
    assert resp.status_code == 200
    assert db.faculty.find_one({"_id": faculty['_id']})['average_rating'] == 1


def test_delete_review_recomputes_from_remaining(client, db, faculty, make_user, headers):
    first, second = make_user(), make_user()
    review_id = client.post('/api/reviews', json=review_body(faculty, ratings=(5, 5, 5, 5)),
                            headers=headers(first)).get_json()['review']['_id']
    client.post('/api/reviews', json=review_body(faculty, alias='Early Bird', ratings=(3, 3, 3, 3)),
                headers=headers(second))
    assert db.faculty.find_one({"_id": faculty['_id']})['average_rating'] == 4

    resp = client.delete(f'/api/reviews/{review_id}', headers=headers(first))
    assert resp.status_code == 200

    stored = db.faculty.find_one({"_id": faculty['_id']})
    assert stored['total_reviews'] == 1
    assert stored['average_rating'] == 3
    assert db.rating_recomputes.count_documents({}) == 0


def test_failed_recompute_leaves_marker_for_drain(client, db, faculty, make_user, headers):
    user = make_user()
    review_id = client.post('/api/reviews', json=review_body(faculty), headers=headers(user)).get_json()['review']['_id']

    with patch('routes.review_routes.recompute_faculty_ratings', side_effect=PyMongoError('connection reset')):
        resp = client.delete(f'/api/reviews/{review_id}', headers=headers(user))

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Storage unavailable. Please try again."}
    assert db.reviews.count_documents({}) == 0
    assert db.rating_recomputes.count_documents({"faculty_id": faculty['_id']}) == 1
    # the aggregate still counts the deleted review until the outbox is drained
    assert db.faculty.find_one({"_id": faculty['_id']})['total_reviews'] == 1

    assert drain_pending_recomputes(db) == 1
    assert db.faculty.find_one({"_id": faculty['_id']})['total_reviews'] == 0
    assert db.rating_recomputes.count_documents({}) == 0


def test_only_author_can_delete(client, faculty, make_user, headers):
    review_id = client.post('/api/reviews', json=review_body(faculty),
                            headers=headers(make_user())).get_json()['review']['_id']
    resp = client.delete(f'/api/reviews/{review_id}', headers=headers(make_user()))
    assert resp.status_code == 403


def test_react_toggles(client, faculty, make_user, headers):
    review_id = client.post('/api/reviews', json=review_body(faculty),
                            headers=headers(make_user())).get_json()['review']['_id']
    reader = make_user()
    url = f'/api/reviews/{review_id}/react'

    review = client.post(url, json={"action": "like"}, headers=headers(reader)).get_json()['review']
    assert (review['likes'], review['dislikes'], review['user_reaction']) == (1, 0, 'like')

    review = client.post(url, json={"action": "dislike"}, headers=headers(reader)).get_json()['review']
    assert (review['likes'], review['dislikes'], review['user_reaction']) == (0, 1, 'dislike')

    review = client.post(url, json={"action": "dislike"}, headers=headers(reader)).get_json()['review']
    assert (review['likes'], review['dislikes'], review['user_reaction']) == (0, 0, None)


def test_list_sorted_by_rating(client, faculty, make_user, headers):
    client.post('/api/reviews', json=review_body(faculty, alias='Low', ratings=(1, 1, 1, 1)), headers=headers(make_user()))
    client.post('/api/reviews', json=review_body(faculty, alias='High', ratings=(5, 5, 5, 5)), headers=headers(make_user()))

    resp = client.get(f"/api/reviews?faculty_id={faculty['_id']}&sort_by=rating-high")
    assert [r['user_name'] for r in resp.get_json()['reviews']] == ['High', 'Low']

    resp = client.get(f"/api/reviews?faculty_id={faculty['_id']}&sort_by=rating-low")
    assert [r['user_name'] for r in resp.get_json()['reviews']] == ['Low', 'High']

    assert client.get(f"/api/reviews?faculty_id={faculty['_id']}&sort_by=best").status_code == 400


def test_my_reviews(client, faculty, make_user, headers):
    user = make_user()
    client.post('/api/reviews', json=review_body(faculty), headers=headers(user))
    reviews = client.get('/api/reviews/mine', headers=headers(user)).get_json()['reviews']
    assert len(reviews) == 1
    assert reviews[0]['faculty']['initials'] == 'ABC'
    assert reviews[0]['is_mine'] is True


def test_faculty_lookup_by_slug_and_search(client, faculty, make_faculty):
    make_faculty(initials='PQR', name='Pat Quinn', approved=False)

    resp = client.get('/api/faculty/alice-bob-carter-abc')
    assert resp.status_code == 200
    assert resp.get_json()['faculty']['initials'] == 'ABC'

    listing = client.get('/api/faculty?search=alice').get_json()
    assert [f['initials'] for f in listing['faculty']] == ['ABC']
    assert listing['departments'] == ['CSE']

    # unapproved faculty stay hidden from the public list
    assert client.get('/api/faculty?search=pat').get_json()['faculty'] == []
    assert client.get('/api/faculty/check-initials?initials=pqr').get_json()['exists'] is True


def test_check_username(client, faculty, make_user, headers):
    author = make_user()
    client.post('/api/reviews', json=review_body(faculty), headers=headers(author))

    assert client.get('/api/reviews/check-username?user_name=night%20OWL').get_json() == {"available": False}
    assert client.get('/api/reviews/check-username?user_name=Early%20Bird').get_json() == {"available": True}
    # the author may reuse their own alias
    resp = client.get('/api/reviews/check-username?user_name=Night%20Owl', headers=headers(author))
    assert resp.get_json()['available'] is True
    assert client.get('/api/reviews/check-username?user_name=x').get_json()['available'] is False


def test_check_reviewed(client, faculty, make_user, headers):
    user = make_user()
    url = f"/api/reviews/check-reviewed?faculty_id={faculty['_id']}"
    assert client.get(url, headers=headers(user)).get_json() == {"has_reviewed": False, "review_id": None}

    review_id = client.post('/api/reviews', json=review_body(faculty), headers=headers(user)).get_json()['review']['_id']
    assert client.get(url, headers=headers(user)).get_json() == {"has_reviewed": True, "review_id": review_id}
    assert client.get(url).get_json()['has_reviewed'] is False
    assert client.get('/api/reviews/check-reviewed?faculty_id=nope', headers=headers(user)).status_code == 200


def test_my_usernames_deduplicated(client, db, faculty, make_faculty, make_user, headers):
    user = make_user()
    client.post('/api/reviews', json=review_body(faculty), headers=headers(user))
    client.post('/api/reviews', json=review_body(make_faculty(initials='XYZ', name='Xavier Young'), alias='night owl'),
                headers=headers(user))
    client.post('/api/reviews', json=review_body(make_faculty(initials='PQR', name='Pat Quinn'), alias='Early Bird'),
                headers=headers(user))

    names = client.get('/api/reviews/my-usernames', headers=headers(user)).get_json()['usernames']
    assert [n.lower() for n in names] == ['early bird', 'night owl']
    assert client.get('/api/reviews/my-usernames').get_json() == {"usernames": []}
