import pytest
from fastapi.testclient import TestClient

from grantforge.provider import (
    GenerationBlockedError,
    GenerationProviderError,
    GenerationRateLimitError,
    GenerationTimeoutError,
)

GENERATED_PROPOSAL = """Here is the proposal you asked for:
```json
{
  "title": "AgriAI",
  "summary": "<p>AI support for smallholder farms.</p>",
  "sections": {"relevance": "<p>Rural digital gap.</p>", "greenSkills": "<p>Training.</p>"},
  "budget": [
    {"label": "Staff", "cost": 60000, "breakdown": [{"subItem": "Salaries", "quantity": 1, "unitCost": 60000, "total": 60000}]},
    {"label": "Travel", "cost": 40000}
  ],
  "workPackages": [{"name": "WP1", "activities": [{"name": "Pilots", "estimatedBudget": 50000}]}]
}
```
Let me know if you need changes."""

IDEA = {"title": "AgriAI", "description": "AI for farms"}


def _create_document(client: TestClient, payload: dict[str, object]) -> dict[str, object]:
    response = client.post("/proposals", json=payload)
    assert response.status_code == 200
    return response.json()["document"]


def test_generate_proposal_rebalances_budget_to_requested_total(client: TestClient, fake_provider) -> None:
    fake_provider.queue(GENERATED_PROPOSAL)

    response = client.post("/generate-proposal", json={"idea": IDEA, "user_prompt": "Total budget €250,000"})

    assert response.status_code == 200
    payload = response.json()
    document = payload["document"]
    assert document["id"].startswith("proposal-")
    assert document["version"] == 1
    assert document["targetBudget"] == 250000
    assert [item["cost"] for item in document["budget"]] == [150000, 100000]
    assert document["budget"][0]["breakdown"][0]["total"] == 150000
    assert document["workPackages"][0]["activities"][0]["estimatedBudget"] == 250000
    assert payload["budget_report"]["scale_factor"] == 2.5
    assert payload["budget_report"]["synthesized"] is False
    assert "250000" in fake_provider.calls[0]["prompt"]

    outline = payload["outline"]
    assert outline["present"] == ["summary", "relevance", "green_skills"]
    assert "introduction" in outline["missing"]
    assert outline["sections"][-1] == {
        "key": "green_skills",
        "label": "Green Skills",
        "depth": 0,
        "description": "",
        "charLimit": None,
        "source": "generated",
    }

    stored = client.get(f"/proposals/{document['id']}")
    assert stored.status_code == 200
    assert stored.json()["document"]["sections"]["green_skills"] == "<p>Training.</p>"


def test_generate_proposal_merges_selected_partners_and_synthesizes_budget(client: TestClient, fake_provider) -> None:
    first = client.post("/partners", json={"name": "Agritech Lab", "keywords": "AI, farming"}).json()["partner"]
    second = client.post("/partners", json={"organisation": "Rural Net"}).json()["partner"]
    fake_provider.queue(
        {
            "title": "",
            "summary": "<p>Summary</p>",
            "partners": [{"name": "Agritech", "role": "Technical lead", "description": "Builds models"}],
            "budget": [],
        }
    )

    response = client.post(
        "/generate-proposal",
        json={"idea": IDEA, "constraints": {"budget": "€120,000"}, "partner_ids": [first["id"], second["id"]]},
    )

    assert response.status_code == 200
    document = response.json()["document"]
    assert document["title"] == "AgriAI"
    assert [(p["name"], p["role"], p["isCoordinator"]) for p in document["partners"]] == [
        ("Agritech Lab", "Technical lead", True),
        ("Rural Net", "Partner", False),
    ]
    assert len(document["budget"]) == 1
    item = document["budget"][0]
    assert item["label"] == "Project Implementation"
    assert item["cost"] == 120000
    assert [allocation["amount"] for allocation in item["partnerAllocations"]] == [60000, 60000]
    assert response.json()["budget_report"]["synthesized"] is True


def test_generate_proposal_rejects_unknown_partner(client: TestClient, fake_provider) -> None:
    response = client.post("/generate-proposal", json={"idea": IDEA, "partner_ids": ["partner-missing"]})

    assert response.status_code == 404
    assert response.json()["detail"]["partner_ids"] == ["partner-missing"]
    assert fake_provider.calls == []


def test_generation_prompt_is_grounded_on_knowledge_library(client: TestClient, fake_provider) -> None:
    client.post(
        "/knowledge",
        json={"source_name": "KA220 Guide", "chunks": [{"content": "Needs analysis must cite regional data", "type": "criteria"}]},
    )
    fake_provider.queue({"title": "AgriAI", "summary": "<p>S</p>"})

    response = client.post(
        "/generate-proposal",
        json={"idea": {"title": "AgriAI", "description": "Needs analysis for farms"}},
    )

    assert response.status_code == 200
    assert "EXPERT KNOWLEDGE FROM: KA220 Guide (criteria)" in fake_provider.calls[0]["prompt"]


@pytest.mark.parametrize(
    "error,status_code",
    [
        (GenerationRateLimitError("throttled", retry_after=30), 429),
        (GenerationTimeoutError("slow"), 504),
        (GenerationBlockedError("guardrail"), 422),
        (GenerationProviderError("down"), 502),
    ],
)
def test_provider_failures_map_to_http_errors(client: TestClient, fake_provider, error, status_code) -> None:
    fake_provider.queue(error)

    response = client.post("/generate-proposal", json={"idea": IDEA})

    assert response.status_code == status_code
    if status_code == 429:
        assert response.headers["retry-after"] == "30"
    assert client.get("/proposals").json()["proposals"] == []


def test_unrepairable_output_is_rejected(client: TestClient, fake_provider) -> None:
    fake_provider.queue("I cannot write that proposal.")

    response = client.post("/generate-proposal", json={"idea": IDEA})

    assert response.status_code == 422
    assert "could not be repaired" in response.json()["detail"]["message"]


def test_save_list_update_and_delete(client: TestClient) -> None:
    document = _create_document(client, {"title": "Draft", "sections": {"needs": "<p>x</p>"}})
    assert document["version"] == 1

    listed = client.get("/proposals").json()["proposals"]
    assert [item["id"] for item in listed] == [document["id"]]

    updated = client.put(f"/proposals/{document['id']}", json={"title": "Renamed", "version": 1})
    assert updated.status_code == 200
    assert updated.json()["document"]["title"] == "Renamed"
    assert updated.json()["document"]["sections"] == {"needs": "<p>x</p>"}
    assert updated.json()["document"]["version"] == 2

    stale = client.put(f"/proposals/{document['id']}", json={"title": "Stale", "version": 1})
    assert stale.status_code == 409
    assert stale.json()["detail"]["current_version"] == 2

    invalid = client.put(f"/proposals/{document['id']}", json={"title": "Bad", "version": "two"})
    assert invalid.status_code == 422

    deleted = client.delete(f"/proposals/{document['id']}")
    assert deleted.json() == {"deleted": True, "id": document["id"]}
    assert client.get(f"/proposals/{document['id']}").status_code == 404
    assert client.delete(f"/proposals/{document['id']}").status_code == 404


def test_saved_budget_is_scaled_onto_target(client: TestClient) -> None:
    document = _create_document(
        client,
        {
            "title": "Budgeted",
            "targetBudget": "€100,000",
            "budget": [{"label": "Staff", "cost": 30000}, {"label": "Travel", "cost": 20000}],
        },
    )

    assert document["targetBudget"] == 100000
    assert [item["cost"] for item in document["budget"]] == [60000, 40000]


def test_saved_budget_without_target_is_left_alone(client: TestClient) -> None:
    document = _create_document(client, {"title": "Loose", "budget": [{"label": "Staff", "cost": 1234}]})

    assert document["budget"][0]["cost"] == 1234


def test_outline_uses_stored_template_and_appends_extra_sections(client: TestClient) -> None:
    template = client.post(
        "/templates",
        json={"name": "KA220", "sections": [{"label": "Needs Analysis", "key": "needs"}, {"label": "Impact"}]},
    ).json()["template"]
    document = _create_document(
        client,
        {"title": "T", "templateId": template["id"], "sections": {"needs": "<p>x</p>", "extra_notes": "<p>y</p>"}},
    )

    response = client.get(f"/proposals/{document['id']}/outline")

    assert response.status_code == 200
    outline = response.json()
    assert [entry["key"] for entry in outline["sections"]] == ["needs", "impact", "extra_notes"]
    assert outline["present"] == ["needs", "extra_notes"]
    assert outline["missing"] == ["impact"]


def test_outline_falls_back_to_default_template(client: TestClient) -> None:
    document = _create_document(client, {"title": "T", "summary": "<p>S</p>"})

    outline = client.get(f"/proposals/{document['id']}/outline").json()

    assert outline["sections"][0]["key"] == "summary"
    assert outline["present"] == ["summary"]


def test_outline_with_unknown_template_is_404(client: TestClient) -> None:
    document = _create_document(client, {"title": "T"})

    response = client.get(f"/proposals/{document['id']}/outline", params={"template_id": "template-missing"})

    assert response.status_code == 404


def test_ai_edit_with_explicit_section(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "T", "sections": {"impact": "<p>old</p>"}})
    fake_provider.queue({"content": "<p>Stronger impact.</p>"})

    response = client.post(
        f"/proposals/{document['id']}/ai-edit",
        json={"instruction": "Make the impact stronger", "section_key": "impact"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["editedSection"] == "impact"
    assert payload["document"]["sections"]["impact"] == "<p>Stronger impact.</p>"
    assert payload["document"]["version"] == 2
    assert fake_provider.calls[0]["lite"] is False


def test_ai_edit_detects_section_with_lite_model(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "T"})
    fake_provider.queue({"section": "Risk Management"}, {"content": "<p>Mitigations.</p>"})

    response = client.post(f"/proposals/{document['id']}/ai-edit", json={"instruction": "Add mitigations"})

    assert response.status_code == 200
    assert response.json()["editedSection"] == "risk_management"
    assert response.json()["document"]["sections"]["risk_management"] == "<p>Mitigations.</p>"
    assert fake_provider.calls[0]["lite"] is True


def test_ai_edit_without_detectable_section_is_rejected(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "T"})
    fake_provider.queue({"section": ""})

    response = client.post(f"/proposals/{document['id']}/ai-edit", json={"instruction": "Improve it"})

    assert response.status_code == 422


def test_ai_edit_title_updates_top_level_field(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "T"})
    fake_provider.queue({"content": "AgriAI 2.0"})

    response = client.post(
        f"/proposals/{document['id']}/ai-edit",
        json={"instruction": "Punchier title", "section_key": "title"},
    )

    assert response.json()["document"]["title"] == "AgriAI 2.0"
    assert "title" not in response.json()["document"]["sections"]


def test_ai_edit_on_work_plan_rebalances_budget(client: TestClient, fake_provider) -> None:
    document = _create_document(
        client,
        {
            "title": "T",
            "targetBudget": 100000,
            "budget": [{"label": "Staff", "cost": 100000}],
            "workPackages": [{"name": "WP1", "activities": [{"name": "Pilots", "estimatedBudget": 100000}]}],
        },
    )
    fake_provider.queue(
        {
            "content": [
                {
                    "name": "WP1",
                    "activities": [
                        {"name": "Pilots", "estimatedBudget": 50000},
                        {"name": "Field trial", "estimatedBudget": 40000},
                    ],
                }
            ]
        }
    )

    response = client.post(
        f"/proposals/{document['id']}/ai-edit",
        json={"instruction": "Add a field trial and raise the total to €150,000", "section_key": "workPlan"},
    )

    assert response.status_code == 200
    payload = response.json()
    edited = payload["document"]
    assert payload["editedSection"] == "workPackages"
    assert edited["targetBudget"] == 150000
    assert sum(item["cost"] for item in edited["budget"]) == 150000
    activities = edited["workPackages"][0]["activities"]
    assert [activity["estimatedBudget"] for activity in activities] == [110000, 40000]


def test_ai_edit_rejects_non_list_for_structured_section(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "T"})
    fake_provider.queue({"content": "<p>not a list</p>"})

    response = client.post(
        f"/proposals/{document['id']}/ai-edit",
        json={"instruction": "Rewrite the risks", "section_key": "risks"},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["section"] == "risks"


def test_ai_edit_on_missing_document_is_404(client: TestClient, fake_provider) -> None:
    response = client.post("/proposals/proposal-missing/ai-edit", json={"instruction": "x", "section_key": "impact"})

    assert response.status_code == 404
    assert fake_provider.calls == []


def test_generate_missing_section(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "AgriAI", "summary": "<p>S</p>"})
    fake_provider.queue({"content": "<p>Green skills plan.</p>"})

    response = client.post(f"/proposals/{document['id']}/generate-section", json={"section_key": "greenSkills"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["section_key"] == "green_skills"
    assert payload["document"]["sections"]["green_skills"] == "<p>Green skills plan.</p>"
    assert "Green Skills" in fake_provider.calls[0]["prompt"]


def test_generate_missing_section_rejects_empty_content(client: TestClient, fake_provider) -> None:
    document = _create_document(client, {"title": "AgriAI"})
    fake_provider.queue({"content": "   "})

    response = client.post(f"/proposals/{document['id']}/generate-section", json={"section_key": "impact"})

    assert response.status_code == 422
    stored = client.get(f"/proposals/{document['id']}").json()["document"]
    assert stored["version"] == 1


@pytest.mark.parametrize(("target", "expected"), [(500, [375, 125]), (0, [0, 0])])
def test_saved_budget_honors_small_and_zero_targets(client: TestClient, target: int, expected: list[int]) -> None:
    document = _create_document(
        client,
        {
            "title": "Micro grant",
            "targetBudget": target,
            "budget": [{"label": "Staff", "cost": 300}, {"label": "Travel", "cost": 100}],
        },
    )

    assert document["targetBudget"] == target
    assert [item["cost"] for item in document["budget"]] == expected


def test_update_with_aliased_fields_replaces_stored_values(client: TestClient) -> None:
    document = _create_document(
        client,
        {
            "title": "Aliased",
            "targetBudget": 100000,
            "budget": [{"label": "Staff", "cost": 60000}, {"label": "Travel", "cost": 40000}],
            "workPackages": [{"name": "Old"}],
        },
    )

    response = client.put(f"/proposals/{document['id']}", json={"work_packages": [{"name": "New"}]})

    assert response.status_code == 200
    updated = response.json()["document"]
    assert [package["name"] for package in updated["workPackages"]] == ["New"]
    assert "work_packages" not in updated

    retargeted = client.put(f"/proposals/{document['id']}", json={"target_budget": 80000}).json()["document"]
    assert retargeted["targetBudget"] == 80000
    assert [item["cost"] for item in retargeted["budget"]] == [48000, 32000]


def test_update_with_legacy_narrative_field_keeps_other_sections(client: TestClient) -> None:
    document = _create_document(client, {"title": "Legacy", "sections": {"needs": "<p>x</p>"}})

    response = client.put(f"/proposals/{document['id']}", json={"impact": "<p>Impact</p>"})

    assert response.status_code == 200
    sections = response.json()["document"]["sections"]
    assert sections["needs"] == "<p>x</p>"
    assert "<p>Impact</p>" in sections.values()


def test_ai_edit_keeps_stored_target_when_instruction_has_small_numbers(client: TestClient, fake_provider) -> None:
    document = _create_document(
        client,
        {
            "title": "T",
            "targetBudget": 400000,
            "budget": [{"label": "Staff", "cost": 400000}],
            "workPackages": [{"name": "WP1", "activities": [{"name": "Pilots", "estimatedBudget": 400000}]}],
        },
    )
    fake_provider.queue(
        {
            "content": [
                {
                    "name": "WP1",
                    "activities": [
                        {"name": "Pilots", "estimatedBudget": 100000},
                        {"name": "Training", "estimatedBudget": 100000},
                        {"name": "Outreach", "estimatedBudget": 100000},
                    ],
                }
            ]
        }
    )

    response = client.post(
        f"/proposals/{document['id']}/ai-edit",
        json={"instruction": "Split the work plan into 3 activities", "section_key": "workPlan"},
    )

    assert response.status_code == 200
    edited = response.json()["document"]
    assert edited["targetBudget"] == 400000
    assert sum(item["cost"] for item in edited["budget"]) == 400000
    activities = edited["workPackages"][0]["activities"]
    assert sum(activity["estimatedBudget"] for activity in activities) == 400000
