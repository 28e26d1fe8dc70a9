import os
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

from fixelcfe.__main__ import STATS_OPTIONS, build_config, main
from fixelcfe.cli import cli_overrides, create_parser
from fixelcfe.config.defaults import ConnectConfig, StatsConfig
from fixelcfe.fixel.codec import save_matrix
from fixelcfe.io.fixel import load_fixel_data, save_fixel_data
from fixelcfe.tests.tools import chain_matrix


def test_parser_commands():
    parser = create_parser()
    args = parser.parse_args([
        'cfestats', 'template', 'files.txt', 'design.txt', 'contrast.txt', 'matrix.txt', 'out',
        '--nshuffles', '100', '--cfe-e', '1.5', '--strong', '--no-plots',
        '--column', 'a.txt', '--column', 'b.txt',
    ])

    assert args.command == 'cfestats'
    assert args.nshuffles == 100
    assert args.e == 1.5
    assert args.strong is True
    assert args.save_plots is False
    assert args.nonstationarity is None
    assert args.columns == [Path('a.txt'), Path('b.txt')]

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_cli_overrides_only_given_values():
    args = create_parser().parse_args(['connect', 'matrix.txt', 'in.nii', 'out.nii', '--value', '2'])
    assert cli_overrides(args, ('value_threshold', 'connectivity_threshold')) == {
        'value_threshold': 2.0
    }


def test_build_config_precedence():
    config = build_config(
        StatsConfig,
        {'fonly': False, 'cfe': {'e': 1.0, 'h': 2.0}, 'permutation': {'nshuffles': 50}},
        {'cfe': {'e': 3.0}, 'permutation': {}},
    )
    assert config.cfe.e == 3.0
    assert config.cfe.h == 2.0
    assert config.cfe.c == 0.5
    assert config.permutation.nshuffles == 50

    args = create_parser().parse_args(['cfestats', 'a', 'b', 'c', 'd', 'e', 'f',
                                       '--mask', 'mask.nii.gz'])
    assert build_config(StatsConfig, None, cli_overrides(args, STATS_OPTIONS)).mask == \
        Path('mask.nii.gz')


def test_main_runs_connect(monkeypatch):
    with tempfile.TemporaryDirectory() as temp_dir:
        matrix = save_matrix(chain_matrix(4), os.path.join(temp_dir, 'matrix.txt'))
        in_data = save_fixel_data(os.path.join(temp_dir, 'in.nii.gz'), np.ones(4))
        out_data = os.path.join(temp_dir, 'labels.nii.gz')
        config_path = os.path.join(temp_dir, 'config.yaml')
        with open(config_path, 'w') as f:
            f.write('value_threshold: 0.5\n')

        monkeypatch.setattr(sys, 'argv', ['fixelcfe', 'connect', str(matrix), str(in_data),
                                          out_data, '-c', config_path])
        main()

        np.testing.assert_array_equal(load_fixel_data(out_data, 4), [1, 1, 1, 1])


def test_main_exits_on_error(monkeypatch):
    monkeypatch.setattr(sys, 'argv', ['fixelcfe', 'connect', '/nonexistent/matrix.txt',
                                      '/nonexistent/in.nii', '/nonexistent/out.nii'])
    with pytest.raises(SystemExit) as info:
        main()
    assert info.value.code == 1


def test_connect_config_default_valid():
    ConnectConfig().validate()
