#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
import pytest
import yaml
from unittest.mock import patch

from pydantic_core import ValidationError

from querypilot.config import settings


def test_configure_with_no_file_works(mock_config_dir):
    s = settings.instance()
    assert settings.instance() is not None
    settings.configure(force=True)
    assert settings.instance() is not None
    assert settings.instance() is not s


def test_configure_creates_default_config(mock_config_dir):
    """Test that configure creates the default config file if it doesn't exist"""
    default_path = mock_config_dir / "querypilot" / "config.yaml"
    assert default_path == settings.default_config()
    assert not default_path.exists()
    settings.configure(force=True)
    assert default_path.exists()
    assert settings.instance().resolver.min_confidence == 25.0


def test_write_and_reload_settings(mock_config_dir):
    settings.configure(force=True)
    settings._settings.set(
        settings.Settings.model_validate(
            {
                "llm": {"provider": "ollama", "model": "llama3"},
                "execution": {"max_rows": 500, "allow_dml": True},
            }
        )
    )
    settings.write_settings()
    assert settings.default_config().exists()
    settings.configure(force=True)
    cfg = settings.instance()
    assert cfg.llm.provider == settings.Model.ollama
    assert cfg.llm.endpoint == "http://localhost:11434"
    assert cfg.execution.max_rows == 500 and cfg.execution.allow_dml


def test_write_settings_dry_run_does_not_touch_disk(mock_config_dir):
    out = settings.write_settings(
        inst=settings.Settings.model_validate({"catalog": {"ttl_seconds": 5}}),
        dry_run=True,
    )
    assert yaml.safe_load(out) == {"catalog": {"ttl_seconds": 5.0}}
    assert not settings.default_config().exists()


def test_invalid_file_keeps_previous_settings(mock_config_dir, temp_config_dir):
    settings.configure(force=True)
    before = settings.instance()
    bad = temp_config_dir / "bad.yaml"
    bad.write_text(yaml.dump({"resolver": {"max_alternatives": 7}}))
    with pytest.raises(ValidationError):
        settings.configure(bad, force=True)
    assert settings.instance() is before


def test_env_overrides(mock_config_dir):
    env = {
        "QUERYPILOT_EXECUTION__TIMEOUT_SECONDS": "12",
        "QUERYPILOT_SAFETY__CONFIRMATION_THRESHOLD": "0.5",
    }
    with patch.dict("os.environ", env):
        s = settings.Settings()
    assert s.execution.timeout_seconds == 12.0
    assert s.safety.confirmation_threshold == 0.5


def test_api_key_from_file(temp_config_dir):
    key_file = temp_config_dir / "key.txt"
    key_file.write_text("sk-from-file\n")
    llm = settings.Llm.model_validate({"api_key": f"@{key_file}"})
    assert llm.api_key == "sk-from-file"


def test_with_overrides():
    s = settings.Settings().with_overrides(
        {"llm.model": "gpt-4o", "execution.preview_rows": 3, "llm.org": None}
    )
    assert s.llm.model == "gpt-4o"
    assert s.execution.preview_rows == 3
    assert s.llm.org is None


def test_sensitive_columns_are_lowercased():
    e = settings.Execution.model_validate({"sensitive_columns": ["Password", "SSN"]})
    assert e.sensitive_columns == ["password", "ssn"]


@pytest.mark.parametrize(
    "section,values",
    [
        ("resolver", {"max_alternatives": 4}),
        ("resolver", {"min_confidence": 101}),
        ("llm", {"max_retries": 2}),
        ("safety", {"confirmation_threshold": 1.5}),
        ("execution", {"preview_rows": 0}),
    ],
)
def test_out_of_range_values_rejected(section: str, values: dict):
    with pytest.raises(ValidationError):
        settings.Settings.model_validate({section: values})


@pytest.mark.parametrize(
    "provider,base_url,expected",
    [
        ("openai", None, "https://api.openai.com/v1"),
        ("ollama", None, "http://localhost:11434"),
        ("openai", "http://proxy.local/v1/", "http://proxy.local/v1"),
    ],
)
def test_llm_endpoint(provider, base_url, expected):
    llm = settings.Llm.model_validate({"provider": provider, "base_url": base_url})
    assert llm.endpoint == expected
