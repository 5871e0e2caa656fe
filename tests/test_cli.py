"""Command line tests."""

import json
import textwrap

import pytest

from formula_engine.cli import main

CATALOG_YAML = textwrap.dedent("""
    formulas:
      - name: annual_savings
        expression: "annual_energy * [lookup:energy_price] - 500"
        result_unit: "€"
    lookups:
      - name: energy_price
        conditions:
          - order: 1
            condition_expression: "heating_type == 'oil'"
            target_value: "0.125"
""")


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(CATALOG_YAML)
    return path


@pytest.fixture
def bindings_file(tmp_path):
    path = tmp_path / "lead.json"
    path.write_text(json.dumps({"annual_energy": 20000, "heating_type": "oil"}))
    return path


class TestCheck:
    def test_clean_catalog(self, catalog_file, capsys):
        assert main(["check", str(catalog_file)]) == 0
        assert "0 problems" in capsys.readouterr().out

    def test_reports_problems(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(
            textwrap.dedent("""
                formulas:
                  - name: a
                    expression: "[calc:b] + 1"
                  - name: b
                    expression: "[calc:a] + 1"
                  - name: c
                    expression: "(1 + 2"
                  - name: d
                    expression: "[calc:ghost]"
            """)
        )
        assert main(["check", str(path)]) == 1
        out = capsys.readouterr().out
        assert "circular reference" in out
        assert "formula c" in out
        assert "ghost" in out

    def test_missing_file(self, tmp_path, capsys):
        assert main(["check", str(tmp_path / "nope.yaml")]) == 1
        assert "error:" in capsys.readouterr().err


class TestRender:
    def test_render(self, catalog_file, bindings_file, tmp_path, capsys):
        template = tmp_path / "template.txt"
        template.write_text("Savings: [calc:annual_savings:currency] €")
        code = main(["render", str(catalog_file), str(template), "--bindings", str(bindings_file)])
        assert code == 0
        assert capsys.readouterr().out == "Savings: 2000 €"

    def test_soft_failure_warns(self, catalog_file, tmp_path, capsys):
        template = tmp_path / "template.txt"
        template.write_text("Hi {first_name}")
        assert main(["render", str(catalog_file), str(template)]) == 0
        captured = capsys.readouterr()
        assert captured.out == "Hi [!first_name]"
        assert "warning: {first_name}" in captured.err

    def test_hard_failure_exits_nonzero(self, catalog_file, tmp_path, capsys):
        template = tmp_path / "template.txt"
        template.write_text("[lookup:energy_price]")
        bindings = tmp_path / "lead.yaml"
        bindings.write_text("heating_type: gas\n")
        code = main(["render", str(catalog_file), str(template), "-b", str(bindings)])
        assert code == 1
        captured = capsys.readouterr()
        assert captured.out == "[!lookup:energy_price]"
        assert "error: [lookup:energy_price]" in captured.err


class TestEval:
    def test_eval(self, catalog_file, bindings_file, capsys):
        code = main(["eval", str(catalog_file), "[calc:annual_savings] / 12", "-b", str(bindings_file)])
        assert code == 0
        assert float(capsys.readouterr().out) == pytest.approx(166.6666, rel=1e-4)

    def test_eval_error(self, catalog_file, capsys):
        assert main(["eval", str(catalog_file), "1 / 0"]) == 1
        assert "division by zero" in capsys.readouterr().err
