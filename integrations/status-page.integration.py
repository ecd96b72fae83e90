metadata = {
    "name": "status-page",
    "description": "Shows the current status of the service behind an internal dashboard",
    "match": {
        "contextType": "generic",
        "context": {"url": {"startsWith": "https://dashboard.example.com/"}},
    },
    "cache": 60,
    "requiredSecrets": ["STATUS_TOKEN"],
    "priority": 200,
}


def should_run(context):
    return "/services/" in context["url"]


async def run(context, secrets, data_files):
    service = context["url"].rstrip("/").rsplit("/", 1)[-1]
    response = await fetch(
        f"https://status.example.com/api/services/{service}",
        headers={"Authorization": f"Bearer {secrets['STATUS_TOKEN']}"},
    )
    if response.status_code != 200:
        logger.warning("status lookup failed service=%s status=%s", service, response.status_code)
        return None
    state = response.json().get("state", "unknown")
    return {
        "type": "link",
        "content": f"{service}: {state}",
        "href": f"https://status.example.com/services/{service}",
        "status": "success" if state == "operational" else "important",
    }
