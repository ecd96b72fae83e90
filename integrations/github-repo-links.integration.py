from ._links import repo_links

metadata = {
    "name": "github-repo-links",
    "description": "Quick links for the repository being viewed",
    "match": {
        "contextType": "github",
        "context": {
            "url": {"startsWith": "https://github.com/"},
            "repository.name": {"exists": True},
        },
    },
    "cache": 600,
    "cacheKey": ["repository.owner", "repository.name"],
}


def run(context, secrets, data_files):
    repo = context["repository"]
    owners = next((f["data"] for f in data_files if f["id"] == "owners"), {}) or {}
    results = repo_links(repo["owner"], repo["name"])
    team = owners.get(repo["name"])
    if team:
        results.append({"type": "text", "content": f"Owned by {team}", "status": "relevant"})
    return results
