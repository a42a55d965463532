"""Tests for system prompt generation."""

from magnus.prompts import build_system_prompt, describe_capability, load_rules


class TestSystemPrompt:
    def test_contains_format_context_and_catalogue(self, registry, tmp_path):
        prompt = build_system_prompt(registry, "xml", current_dir=str(tmp_path), os_name="Linux")
        assert f'Current Directory: "{tmp_path}"' in prompt
        assert 'Operating System: "Linux"' in prompt
        assert "### THINKING" in prompt
        assert "### ACTION" in prompt
        assert "### RESPONSE" in prompt
        assert "<tool_name>" in prompt
        for name in ("grep", "read", "count", "flaky"):
            assert f"TOOL: {name}" in prompt

    def test_json_format_instructions(self, registry, tmp_path):
        prompt = build_system_prompt(registry, "json", current_dir=str(tmp_path))
        assert '{"name": "tool_name", "parameters"' in prompt
        assert "<tool_name>" not in prompt

    def test_rules_file_appended(self, registry, tmp_path):
        (tmp_path / "MAGNUS.md").write_text("Always use tabs.\n")
        prompt = build_system_prompt(registry, current_dir=str(tmp_path))
        assert "## PROJECT-SPECIFIC RULES (from MAGNUS.md)\nAlways use tabs." in prompt

    def test_no_rules_file(self, registry, tmp_path):
        assert "PROJECT-SPECIFIC RULES" not in build_system_prompt(registry, current_dir=str(tmp_path))
        assert load_rules(str(tmp_path), "MAGNUS.md") is None

    def test_describe_capability(self, registry):
        text = describe_capability(registry.get("grep"))
        assert text.splitlines() == [
            "TOOL: grep",
            "DESCRIPTION: Search files",
            "PARAMETERS:",
            "  - pattern (string, required): Regex",
            "  - path (optional<string>, optional, default: .): ",
        ]
