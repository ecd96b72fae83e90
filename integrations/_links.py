BASE = "https://github.com"


def repo_links(owner, name):
    root = f"{BASE}/{owner}/{name}"
    return [
        {
            "type": "dropdown",
            "content": "Repository",
            "items": [
                {"content": "Actions", "href": f"{root}/actions"},
                {"content": "Pull requests", "href": f"{root}/pulls"},
                {"content": "Releases", "href": f"{root}/releases"},
            ],
        }
    ]
