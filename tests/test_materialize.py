"""
Runtime configuration materialization tests.
"""

import itertools
import os
import stat

import pytest

from conftest import make_config
from wispctl.errors import ConfigError
from wispctl.materialize import (
    MIN_SECRET_BYTES,
    generate_secrets,
    materialize_configuration,
    parse_env_file,
    resolve_domains,
    write_private_file,
)

SECRET_FIELDS = ("DJANGO_SECRET_KEY", "DB_PASS", "INFLUXDB_PASS", "REDIS_PASSWORD")


def _no_prompt(_question):
    raise AssertionError("prompt must not be called")


class TestFreshGeneration:
    def test_writes_owner_only_file(self, tmp_path):
        config = make_config(tmp_path)
        old_umask = os.umask(0)
        try:
            result = materialize_configuration(config, prompt=_no_prompt)
        finally:
            os.umask(old_umask)

        mode = stat.S_IMODE(result.path.stat().st_mode)
        assert mode == 0o600
        assert result.generated is True

    def test_contains_secrets_domains_and_aliases(self, tmp_path):
        config = make_config(tmp_path)

        result = materialize_configuration(config, prompt=_no_prompt)
        values = parse_env_file(result.path)

        for name in SECRET_FIELDS:
            assert values[name]
        assert values["POSTGRES_PASS"] == values["DB_PASS"]
        assert values["DASHBOARD_DOMAIN"] == "dashboard.localhost"
        assert values["VPN_DOMAIN"] == "vpn.dashboard.localhost"
        assert values["UWSGI_PROCESSES"] == "2"
        assert values["OPENWISP_CELERY_COMMAND_FLAGS"] == "--concurrency=1"
        assert result.values == values

    def test_secret_values_are_distinct_across_fields(self, tmp_path):
        result = materialize_configuration(make_config(tmp_path), prompt=_no_prompt)

        secrets = [result.values[name] for name in SECRET_FIELDS]
        assert len(set(secrets)) == len(secrets)

    def test_secrets_are_not_printed(self, tmp_path, capsys):
        result = materialize_configuration(make_config(tmp_path), prompt=_no_prompt)

        out = capsys.readouterr().out
        for name in SECRET_FIELDS:
            assert result.values[name] not in out
        assert "DB_PASS" in out

    def test_domain_flags_override_defaults(self, tmp_path):
        result = materialize_configuration(
            make_config(tmp_path),
            domains={"DASHBOARD_DOMAIN": "dash.example.com", "API_DOMAIN": None},
            prompt=_no_prompt,
        )

        assert result.values["DASHBOARD_DOMAIN"] == "dash.example.com"
        assert result.values["API_DOMAIN"] == "api.localhost"
        assert result.values["VPN_DOMAIN"] == "vpn.dash.example.com"

    def test_repeated_fresh_runs_never_repeat_a_secret(self, tmp_path):
        seen = {name: set() for name in SECRET_FIELDS}
        for i in range(20):
            project = tmp_path / f"run{i}"
            project.mkdir()
            values = materialize_configuration(make_config(project), prompt=_no_prompt).values
            for name in SECRET_FIELDS:
                assert values[name] not in seen[name]
                seen[name].add(values[name])

    def test_custom_template(self, tmp_path):
        (tmp_path / "custom.j2").write_text("DB_PASS={{ secrets.DB_PASS }}\nRUN={{ run_id }}\n")
        config = make_config(tmp_path, materialize={"template": "custom.j2"})

        result = materialize_configuration(config, run_id="abc12345", prompt=_no_prompt)

        assert set(result.values) == {"DB_PASS", "RUN"}
        assert result.values["RUN"] == "abc12345"

    def test_template_with_undefined_variable(self, tmp_path):
        (tmp_path / "custom.j2").write_text("X={{ missing_value }}\n")
        config = make_config(tmp_path, materialize={"template": "custom.j2"})

        with pytest.raises(ConfigError, match="template"):
            materialize_configuration(config, prompt=_no_prompt)
        assert not (tmp_path / ".env").exists()


class TestReuse:
    def test_existing_file_reused_verbatim(self, tmp_path):
        config = make_config(tmp_path)
        first = materialize_configuration(config, prompt=_no_prompt)
        before = first.path.read_bytes()

        second = materialize_configuration(config, domains={"DASHBOARD_DOMAIN": "other.example.com"},
                                           prompt=_no_prompt)

        assert second.generated is False
        assert second.path.read_bytes() == before
        assert second.values == first.values

    def test_handwritten_file_is_parsed_not_regenerated(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("DB_PASS=keep-me\nDASHBOARD_DOMAIN=d.example\n")
        env.chmod(0o600)

        result = materialize_configuration(make_config(tmp_path), prompt=_no_prompt)

        assert result.values == {"DB_PASS": "keep-me", "DASHBOARD_DOMAIN": "d.example"}
        assert env.read_text() == "DB_PASS=keep-me\nDASHBOARD_DOMAIN=d.example\n"


class TestGenerateSecrets:
    def test_regenerates_on_collision(self):
        values = iter(["same", "same", "other"])

        secrets = generate_secrets({"A": 16, "B": 16}, token_factory=lambda n: next(values))

        assert secrets == {"A": "same", "B": "other"}

    def test_byte_length_passed_to_factory(self):
        counter = itertools.count()
        calls = []

        def factory(nbytes):
            calls.append(nbytes)
            return f"token-{next(counter)}"

        generate_secrets({"A": 32, "B": 16}, token_factory=factory)

        assert calls == [32, 16]

    def test_rejects_short_secrets(self):
        with pytest.raises(ConfigError, match="minimum"):
            generate_secrets({"A": MIN_SECRET_BYTES - 1})


class TestResolveDomains:
    def test_interactive_answers_and_defaults(self):
        answers = iter(["dash.example.org", "", "ops@example.org"])
        questions = []

        def prompt(question):
            questions.append(question)
            return next(answers)

        domains = resolve_domains(
            {"DASHBOARD_DOMAIN": "dashboard.localhost", "API_DOMAIN": "api.localhost",
             "VPN_DOMAIN": "", "EMAIL_DJANGO_DEFAULT": "admin@example.com"},
            {}, interactive=True, prompt=prompt,
        )

        assert domains["DASHBOARD_DOMAIN"] == "dash.example.org"
        assert domains["API_DOMAIN"] == "api.localhost"
        assert domains["EMAIL_DJANGO_DEFAULT"] == "ops@example.org"
        assert domains["VPN_DOMAIN"] == "vpn.dash.example.org"
        assert len(questions) == 3

    def test_flags_skip_prompts(self):
        asked = []

        resolve_domains({"DASHBOARD_DOMAIN": "d"}, {"DASHBOARD_DOMAIN": "flag.example"},
                        interactive=True, prompt=lambda q: asked.append(q) or "")

        assert not any("Dashboard" in q for q in asked)

    def test_end_of_input_keeps_defaults(self):
        def prompt(question):
            raise EOFError()

        domains = resolve_domains({"DASHBOARD_DOMAIN": "dashboard.localhost", "API_DOMAIN": "api.localhost"},
                                  {"API_DOMAIN": "api.example.org"}, interactive=True, prompt=prompt)

        assert domains["DASHBOARD_DOMAIN"] == "dashboard.localhost"
        assert domains["API_DOMAIN"] == "api.example.org"
        assert domains["VPN_DOMAIN"] == "vpn.dashboard.localhost"


class TestParseEnvFile:
    def test_comments_quotes_and_equals(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "# comment\n\nA=1\nexport B='two words'\nC=\"x\"\nD=a=b=c\nE=\n"
        )

        assert parse_env_file(env) == {"A": "1", "B": "two words", "C": "x", "D": "a=b=c", "E": ""}

    def test_malformed_line(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("NOT_A_PAIR\n")

        with pytest.raises(ConfigError, match=":1:"):
            parse_env_file(env)


class TestWritePrivateFile:
    def test_never_overwrites(self, tmp_path):
        target = tmp_path / "secret"
        write_private_file(target, "one")

        with pytest.raises(FileExistsError):
            write_private_file(target, "two")
        assert target.read_text() == "one"
