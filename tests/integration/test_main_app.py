"""
Tests for the headless command line runner.
"""

import json

import main_app


def test_simulated_countermovement_jump(tmp_path, capsys):
    code = main_app.main([
        '--test-type', 'CMJ', '--seed', '3', '--log-file', str(tmp_path / 'engine.log'),
    ])
    output = json.loads(capsys.readouterr().out)
    assert code == 0
    assert output['valid'] is True
    assert output['testType'] == 'CMJ'
    assert output['phases'][0] == 'QUIET_STANDING'
    assert output['phases'][-1] == 'RECOVERY'
    assert 'jumpHeightFlightTime' in output['metrics']


def test_isometric_pull_with_config(tmp_path, capsys):
    config_file = tmp_path / 'engine.yaml'
    config_file.write_text("sampleRateHz: 2000\nflightForceThresholdN: 25\n")
    code = main_app.main([
        '--test-type', 'IMTP', '--seed', '5', '--config', str(config_file),
        '--log-file', str(tmp_path / 'engine.log'),
    ])
    output = json.loads(capsys.readouterr().out)
    assert code == 0
    assert output['phases'] == ['QUIET_STANDING', 'PROPULSION', 'RECOVERY']


def test_missing_config_file(tmp_path, capsys):
    code = main_app.main(['--config', str(tmp_path / 'missing.yaml'),
                          '--log-file', str(tmp_path / 'engine.log')])
    assert code == 2
    assert 'Configuration error' in capsys.readouterr().err


def test_invalid_config_values(tmp_path, capsys):
    config_file = tmp_path / 'engine.yaml'
    config_file.write_text("sampleRateHz: 1234\n")
    code = main_app.main(['--config', str(config_file), '--log-file', str(tmp_path / 'engine.log')])
    assert code == 2
