from bson import ObjectId


def comment(client, author, parent_id, parent_type, content="Nice!"):
    resp = client.post("/comments", json={
        "parentId": parent_id, "parentType": parent_type, "content": content,
    }, headers=author["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()["comment"]


def make_article(client, author, title, category="", tags=None):
    resp = client.post("/articles", json={
        "title": title, "content": f"All about {title}", "category": category, "tags": tags or [],
    }, headers=author["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()["article"]


# ---------- Posts ----------

def test_posts_listing_is_public_and_counts_comments(client, alice, bob, make_post):
    post = make_post(alice)
    make_post(bob, title="Basil harvest")
    comment(client, bob, post["id"], "post")
    comment(client, alice, post["id"], "post")

    resp = client.get("/posts")
    assert resp.status_code == 200
    posts = {p["title"]: p for p in resp.json()["posts"]}
    assert posts["Tomato seeds"]["commentCount"] == 2
    assert posts["Basil harvest"]["commentCount"] == 0
    assert posts["Tomato seeds"]["userId"]["name"] == "Alice"

    mine = client.get("/posts", params={"userId": alice["id"]}).json()["posts"]
    assert [p["title"] for p in mine] == ["Tomato seeds"]
    assert len(client.get("/posts", params={"limit": 1}).json()["posts"]) == 1


def test_post_validation(client, alice):
    resp = client.post("/posts", json={
        "title": "Seeds", "type": "fruit", "quantity": 0, "location": "x", "description": "y",
    }, headers=alice["headers"])
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_post_detail_includes_comments(client, alice, bob, make_post):
    post = make_post(alice)
    comment(client, bob, post["id"], "post", "first")
    comment(client, alice, post["id"], "post", "second")

    resp = client.get(f"/posts/{post['id']}", headers=bob["headers"])
    body = resp.json()
    assert body["post"]["userId"]["favoritePlants"] == ["tomato"]
    assert [c["content"] for c in body["comments"]] == ["first", "second"]
    assert body["comments"][0]["userId"]["name"] == "Bob"

    assert client.get(f"/posts/{ObjectId()}", headers=bob["headers"]).status_code == 404
    assert client.get("/posts/bad-id", headers=bob["headers"]).status_code == 400


def test_only_owner_updates_post_and_status_is_not_editable(client, alice, bob, make_post):
    post = make_post(alice)

    resp = client.put(f"/posts/{post['id']}", json={"title": "Stolen"}, headers=bob["headers"])
    assert resp.status_code == 403

    resp = client.put(f"/posts/{post['id']}", json={"quantity": 5, "status": "completed"}, headers=alice["headers"])
    assert resp.status_code == 200
    updated = resp.json()["post"]
    assert updated["quantity"] == 5
    assert updated["title"] == "Tomato seeds"
    assert updated["status"] == "available"


def test_deleting_post_cascades_its_comments_only(client, alice, bob, mongo_db, make_post, make_request):
    post = make_post(alice)
    plant_request = make_request(alice)
    comment(client, bob, post["id"], "post")
    comment(client, bob, plant_request["id"], "request")

    assert client.delete(f"/posts/{post['id']}", headers=bob["headers"]).status_code == 403
    resp = client.delete(f"/posts/{post['id']}", headers=alice["headers"])
    assert resp.status_code == 200

    assert mongo_db["post"].count_documents({}) == 0
    assert mongo_db["comment"].count_documents({"parentType": "post"}) == 0
    assert mongo_db["comment"].count_documents({"parentType": "request"}) == 1


# ---------- Requests ----------

def test_request_defaults_and_update(client, alice, bob, make_request):
    plant_request = make_request(alice)
    assert plant_request["category"] == "buah"
    assert plant_request["quantity"] == "1"
    assert plant_request["status"] == "open"

    assert client.put(f"/requests/{plant_request['id']}", json={"reason": "x"}, headers=bob["headers"]).status_code == 403
    resp = client.put(f"/requests/{plant_request['id']}", json={"quantity": "3"}, headers=alice["headers"])
    assert resp.json()["request"]["quantity"] == "3"


def test_deleting_request_cascades_comments(client, alice, bob, mongo_db, make_request):
    plant_request = make_request(alice)
    comment(client, bob, plant_request["id"], "request")

    resp = client.get("/requests")
    assert resp.json()["requests"][0]["commentCount"] == 1

    assert client.delete(f"/requests/{plant_request['id']}", headers=alice["headers"]).status_code == 200
    assert mongo_db["comment"].count_documents({}) == 0


# ---------- Comments ----------

def test_comment_validation(client, alice, make_post):
    post = make_post(alice)
    headers = alice["headers"]
    assert client.post("/comments", json={"parentId": post["id"], "parentType": "post"}, headers=headers).status_code == 400
    assert client.post("/comments", json={
        "parentId": post["id"], "parentType": "article", "content": "hi",
    }, headers=headers).status_code == 400
    assert client.post("/comments", json={
        "parentId": str(ObjectId()), "parentType": "post", "content": "hi",
    }, headers=headers).status_code == 404


def test_only_author_deletes_comment(client, alice, bob, mongo_db, make_post):
    post = make_post(alice)
    c = comment(client, bob, post["id"], "post")

    assert client.delete(f"/comments/{c['id']}", headers=alice["headers"]).status_code == 403
    assert client.delete(f"/comments/{c['id']}", headers=bob["headers"]).status_code == 200
    assert mongo_db["comment"].count_documents({}) == 0


# ---------- Articles ----------

def test_article_requires_title_and_content(client, alice):
    resp = client.post("/articles", json={"title": "Only title"}, headers=alice["headers"])
    assert resp.status_code == 400


def test_article_filters(client, alice, bob):
    make_article(client, alice, "Composting basics", category="fertilizer", tags=["compost"])
    make_article(client, bob, "Aphid control", category="pest", tags=["organic"])

    assert [a["title"] for a in client.get("/articles", params={"category": "pest"}).json()["articles"]] == ["Aphid control"]
    assert [a["title"] for a in client.get("/articles", params={"tag": "compost"}).json()["articles"]] == ["Composting basics"]
    assert [a["title"] for a in client.get("/articles", params={"search": "APHID"}).json()["articles"]] == ["Aphid control"]
    assert len(client.get("/articles", params={"userId": alice["id"]}).json()["articles"]) == 1


def test_related_articles_match_category_or_tag(client, alice):
    main = make_article(client, alice, "Main", category="planting", tags=["seeds"])
    make_article(client, alice, "Same category", category="planting")
    make_article(client, alice, "Shared tag", category="harvest", tags=["seeds"])
    make_article(client, alice, "Unrelated", category="pest", tags=["bugs"])

    resp = client.get(f"/articles/{main['id']}", headers=alice["headers"])
    assert resp.status_code == 200
    titles = {a["title"] for a in resp.json()["relatedArticles"]}
    assert titles == {"Same category", "Shared tag"}


def test_related_articles_capped_at_three(client, alice):
    main = make_article(client, alice, "Main", category="planting")
    for i in range(5):
        make_article(client, alice, f"Other {i}", category="planting")

    related = client.get(f"/articles/{main['id']}", headers=alice["headers"]).json()["relatedArticles"]
    assert len(related) == 3
    assert main["id"] not in {a["id"] for a in related}


def test_article_ownership(client, alice, bob, mongo_db):
    article = make_article(client, alice, "Mine")
    body = {"title": "Changed", "content": "New content"}

    assert client.put(f"/articles/{article['id']}", json=body, headers=bob["headers"]).status_code == 403
    resp = client.put(f"/articles/{article['id']}", json=body, headers=alice["headers"])
    assert resp.json()["article"]["title"] == "Changed"

    assert client.delete(f"/articles/{article['id']}", headers=bob["headers"]).status_code == 403
    assert client.delete(f"/articles/{article['id']}", headers=alice["headers"]).status_code == 200
    assert mongo_db["article"].count_documents({}) == 0


def test_uppercase_ids_match_their_canonical_form(client, alice, bob, mongo_db, make_post):
    post = make_post(alice)
    c = comment(client, bob, post["id"].upper(), "post")
    assert c["parentId"] == post["id"]

    mine = client.get("/posts", params={"userId": alice["id"].upper()}).json()["posts"]
    assert [p["commentCount"] for p in mine] == [1]

    assert client.delete(f"/posts/{post['id']}", headers=alice["headers"]).status_code == 200
    assert mongo_db["comment"].count_documents({}) == 0


def test_listing_rejects_malformed_user_filter(client):
    assert client.get("/posts", params={"userId": "nope"}).status_code == 400
    assert client.get("/articles", params={"userId": "nope"}).status_code == 400
