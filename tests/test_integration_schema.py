import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from integration_schema import (
    DEFAULT_CACHE_TTL,
    DEFAULT_PRIORITY,
    Integration,
    normalize_metadata,
    validate_context,
    validate_metadata_raw,
    validate_results,
)


def _metadata(**overrides):
    metadata = {
        "name": "github-hello",
        "match": {"contextType": "github", "context": {"url": {"startsWith": "https://github.com/"}}},
    }
    metadata.update(overrides)
    return metadata


def _codes(issues):
    return [issue["code"] for issue in issues]


class TestMetadata(unittest.TestCase):
    def test_defaults_applied(self) -> None:
        normalized = normalize_metadata({"name": "abcd", "match": {"contextType": "*"}})
        self.assertEqual(normalized["cache"], DEFAULT_CACHE_TTL)
        self.assertEqual(normalized["priority"], DEFAULT_PRIORITY)
        self.assertEqual(normalized["requiredSecrets"], [])
        self.assertEqual(normalized["match"]["context"], {})

    def test_valid_metadata(self) -> None:
        _, errors, warnings = validate_metadata_raw(_metadata(priority=500, cacheKey=["repository.name"]))
        self.assertEqual(errors, [])
        self.assertEqual(warnings, [])

    def test_name_rules(self) -> None:
        for bad in ("abc", "Hello", "1abc", "has space"):
            _, errors, _ = validate_metadata_raw(_metadata(name=bad))
            self.assertIn("METADATA_NAME_INVALID", _codes(errors), bad)

    def test_bounds(self) -> None:
        _, errors, _ = validate_metadata_raw(_metadata(priority=0, cache=-1, requiredSecrets=["x"]))
        codes = _codes(errors)
        self.assertIn("METADATA_PRIORITY_INVALID", codes)
        self.assertIn("METADATA_CACHE_INVALID", codes)
        self.assertIn("METADATA_SECRETS_INVALID", codes)

    def test_bool_priority_rejected(self) -> None:
        _, errors, _ = validate_metadata_raw(_metadata(priority=True))
        self.assertIn("METADATA_PRIORITY_INVALID", _codes(errors))

    def test_match_required(self) -> None:
        _, errors, _ = validate_metadata_raw({"name": "abcd"})
        self.assertIn("METADATA_MATCH_MISSING", _codes(errors))

    def test_generic_requires_absolute_url_rule(self) -> None:
        _, errors, _ = validate_metadata_raw(_metadata(match={"contextType": "generic", "context": {}}))
        self.assertIn("METADATA_GENERIC_URL_REQUIRED", _codes(errors))
        _, errors, _ = validate_metadata_raw(
            _metadata(match={"contextType": "generic", "context": {"url": {"endsWith": ".example.com"}}})
        )
        self.assertIn("METADATA_GENERIC_URL_REQUIRED", _codes(errors))
        _, errors, _ = validate_metadata_raw(
            _metadata(match={"contextType": "generic", "context": {"url": {"startsWith": "not a url"}}})
        )
        self.assertIn("METADATA_GENERIC_URL_INVALID", _codes(errors))
        _, errors, _ = validate_metadata_raw(
            _metadata(match={"contextType": "generic", "context": {"url": {"equals": "https://intranet.example.com/"}}})
        )
        self.assertEqual(errors, [])

    def test_integration_name_falls_back_to_id(self) -> None:
        self.assertEqual(Integration(id="file-id", code="").name, "file-id")
        self.assertEqual(Integration(id="file-id", code="", metadata={"name": "meta-name"}).name, "meta-name")


class TestResults(unittest.TestCase):
    def test_none_is_empty(self) -> None:
        self.assertEqual(validate_results(None), ([], []))

    def test_single_result_wrapped_and_cleaned(self) -> None:
        results, errors = validate_results({"type": "text", "content": "hi", "extra": 1, "icon": None})
        self.assertEqual(errors, [])
        self.assertEqual(results, [{"type": "text", "content": "hi"}])

    def test_dropdown_requires_items(self) -> None:
        _, errors = validate_results([{"type": "dropdown", "content": "menu"}])
        self.assertIn("RESULT_ITEMS_REQUIRED", _codes(errors))
        results, errors = validate_results(
            [{"type": "dropdown", "content": "menu", "items": [{"content": "a", "href": "https://a"}]}]
        )
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["items"], [{"content": "a", "href": "https://a"}])

    def test_invalid_shapes(self) -> None:
        self.assertIn("RESULTS_INVALID", _codes(validate_results("text")[1]))
        self.assertIn("RESULT_TYPE_INVALID", _codes(validate_results([{"type": "html", "content": "x"}])[1]))
        self.assertIn("RESULT_CONTENT_INVALID", _codes(validate_results([{"type": "text"}])[1]))
        self.assertIn("RESULT_STATUS_INVALID", _codes(validate_results([{"type": "text", "content": "x", "status": "red"}])[1]))
        self.assertIn("RESULT_TOOLTIP_INVALID", _codes(validate_results([{"type": "text", "content": "x", "tooltip": ""}])[1]))


class TestContext(unittest.TestCase):
    def test_valid_context(self) -> None:
        body = {"type": "github", "url": "https://github.com/a/b", "repo": {"name": "b", "stars": 3}, "tags": ["a", 1, None]}
        self.assertEqual(validate_context(body, ["github"]), [])

    def test_type_and_url_required(self) -> None:
        details = validate_context({}, ["github"])
        self.assertEqual({d["path"] for d in details}, {"type", "url"})

    def test_unknown_adapter(self) -> None:
        details = validate_context({"type": "jira", "url": "https://x.example.com"}, ["github"])
        self.assertEqual(details[0]["path"], "type")

    def test_invalid_url_mentions_url(self) -> None:
        details = validate_context({"type": "github", "url": "github.com/a"}, ["github"])
        self.assertEqual(details, [{"path": "url", "message": "Invalid URL"}])
        self.assertIn("URL", details[0]["message"])

    def test_arrays_of_objects_rejected(self) -> None:
        details = validate_context({"type": "github", "url": "https://github.com", "items": [{"a": 1}]})
        self.assertEqual(details[0]["path"], "items.0")

    def test_depth_limit(self) -> None:
        nested = {"leaf": 1}
        for _ in range(10):
            nested = {"n": nested}
        details = validate_context({"type": "github", "url": "https://github.com", "deep": nested})
        self.assertEqual(len(details), 1)
        self.assertIn("nesting", details[0]["message"])

        ok = {"leaf": 1}
        for _ in range(8):
            ok = {"n": ok}
        self.assertEqual(validate_context({"type": "github", "url": "https://github.com", "deep": ok}), [])


if __name__ == "__main__":
    unittest.main()
