from fastapi.testclient import TestClient


def test_api_session_search_url_trace_metrics() -> None:
    from search_session.api.main import app

    with TestClient(app) as client:
        assert client.get("/health").json()["status"] == "ok"

        for key, title, file_type in (
            ("api-1", "Budget 2024", "xlsx"),
            ("api-2", "Budget review", "docx"),
            ("api-3", "Travel policy", "docx"),
        ):
            resp = client.post(
                "/documents",
                json={
                    "key": key,
                    "title": title,
                    "url": f"https://contoso/{key}",
                    "properties": {"FileType": file_type},
                },
            )
            assert resp.status_code == 200

        query_resp = client.post("/sessions/api-s1/query", json={"query_text": "budget"})
        assert query_resp.status_code == 200
        assert query_resp.json()["query_text"] == "budget"
        assert query_resp.json()["verticals"] == []

        toggle_resp = client.post(
            "/sessions/api-s1/filters/toggle",
            json={"filter_name": "FileType", "value": "docx"},
        )
        assert toggle_resp.status_code == 200
        assert toggle_resp.json()["active_filters"] == [
            {"filter_name": "FileType", "value": "docx", "operator": "OR"}
        ]

        bad_toggle = client.post(
            "/sessions/api-s1/filters/toggle",
            json={"filter_name": "IsPublished", "value": "maybe", "filter_type": "toggle"},
        )
        assert bad_toggle.status_code == 400

        search_resp = client.post("/sessions/api-s1/search")
        assert search_resp.status_code == 200
        search_payload = search_resp.json()
        assert search_payload["total_count"] == 1
        assert [item["key"] for item in search_payload["items"]] == ["api-2"]
        assert search_payload["error"] is None

        url_resp = client.get("/sessions/api-s1/url")
        assert url_resp.status_code == 200
        assert url_resp.json()["prefix"] == "api-s1"
        assert "api-s1.q=budget" in url_resp.json()["query"]

        traces_resp = client.get("/traces", params={"session_id": "api-s1"})
        assert traces_resp.status_code == 200
        traces = traces_resp.json()["items"]
        assert traces
        assert traces[-1]["refinement_filters"] == ["FileType:docx"]

        trace_resp = client.get(f"/traces/{traces[-1]['trace_id']}")
        assert trace_resp.status_code == 200
        assert client.get("/traces/does-not-exist").status_code == 404

        metrics_resp = client.get("/metrics")
        assert metrics_resp.status_code == 200
        assert metrics_resp.json()["total_searches"] >= 1

        clear_resp = client.delete("/sessions/api-s1/filters")
        assert clear_resp.json()["active_filters"] == []

        assert client.delete("/sessions/api-s1").status_code == 200
        assert client.get("/sessions/api-s1/state").status_code == 404


def test_api_compile_and_promotions() -> None:
    from search_session.api.main import app

    client = TestClient(app)

    compile_resp = client.post(
        "/compile",
        json={
            "query_template": "{searchTerms} Path:{Site.URL}",
            "query_text": "budget",
            "site_url": "https://contoso/sites/fin",
            "filters": [
                {"filter_name": "FileType", "value": '"docx"'},
                {"filter_name": "FileType", "value": '"pptx"'},
            ],
            "sort": {"property": "Title", "direction": "Ascending"},
            "selected_properties": ["Custom"],
        },
    )
    assert compile_resp.status_code == 200
    compiled = compile_resp.json()
    assert compiled["compiled_query"] == "budget Path:https://contoso/sites/fin"
    assert compiled["refinement_filters"] == ['FileType:or("docx","pptx")']
    assert compiled["sort_list"] == [{"property": "Title", "direction": 0}]
    assert compiled["selected_properties"][-1] == "Custom"

    promo_resp = client.post(
        "/promotions/evaluate",
        json={
            "query_text": "employee benefits",
            "rules": [
                {
                    "id": 1,
                    "match_type": "contains",
                    "match_value": "benefits",
                    "promoted_items": [
                        {"url": "https://contoso/b", "title": "B", "position": 2},
                        {"url": "https://contoso/a", "title": "A", "position": 1},
                    ],
                },
                {
                    "id": 2,
                    "match_type": "equals",
                    "match_value": "benefits",
                    "promoted_items": [{"url": "https://contoso/c", "title": "C"}],
                },
            ],
        },
    )
    assert promo_resp.status_code == 200
    assert [item["url"] for item in promo_resp.json()["items"]] == [
        "https://contoso/a",
        "https://contoso/b",
    ]

    assert client.get("/sessions/never-created/state").status_code == 404
