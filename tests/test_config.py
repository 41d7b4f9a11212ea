import pytest

from config import PipelineConfig, load_config
from errors import ConfigError


def test_defaults_without_file(tmp_path):
    cfg = load_config(str(tmp_path / 'absent.yaml'), environ={})
    assert cfg.crash_threshold == 3
    assert cfg.batch_size == 10
    assert cfg.batch_delay == 1.0
    assert cfg.context_lines == 15
    assert cfg.source_root == 'lib/'
    assert cfg.synthetic_marker == 'Sentry Test'


def test_yaml_values_and_unknown_keys(tmp_path):
    path = tmp_path / 'crashlink.yaml'
    path.write_text(
        "repo_owner: acme\nrepo_name: app\nguard_calls:\n  - Guard.run\nworkers: 3\ndashboard:\n  theme: dark\n",
        encoding='utf-8',
    )
    cfg = load_config(str(path), environ={})
    assert cfg.repo_slug == 'acme/app'
    assert cfg.guard_calls == ('Guard.run',)
    assert cfg.workers == 3


def test_environment_overrides_file(tmp_path):
    path = tmp_path / 'crashlink.yaml'
    path.write_text("batch_size: 5\nrepo_owner: acme\n", encoding='utf-8')
    env = {'CRASHLINK_BATCH_SIZE': '20', 'GITHUB_TOKEN': 'secret', 'GITHUB_REPO_OWNER': 'other', 'CRASHLINK_BATCH_DELAY': '0.5'}
    cfg = load_config(str(path), environ=env)
    assert cfg.batch_size == 20
    assert cfg.batch_delay == 0.5
    assert cfg.repo_owner == 'other'
    assert cfg.github_token == 'secret'


def test_bad_environment_value(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / 'absent.yaml'), environ={'CRASHLINK_WORKERS': 'many'})


def test_unparsable_yaml(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text("batch_size: [1, 2\n", encoding='utf-8')
    with pytest.raises(ConfigError):
        load_config(str(path), environ={})


def test_non_mapping_yaml(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text("- a\n- b\n", encoding='utf-8')
    with pytest.raises(ConfigError):
        load_config(str(path), environ={})


def test_shipped_config_loads():
    cfg = load_config(environ={})
    assert cfg.guard_calls


def test_to_dict_masks_secrets():
    data = PipelineConfig(github_token='t', gemini_api_key='k').to_dict()
    assert data['github_token'] == '***'
    assert data['gemini_api_key'] == '***'
    assert data['crash_threshold'] == 3
