import os

import pytest
from gromacs.exceptions import GromacsError

from replica_workflow import WorkflowConfig

MDP_FOLDER = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'mdp_files')

XVG_HEADER = """# This file was created by gmx energy
@    title "GROMACS Energies"
@    xaxis  label "Time (ps)"
@TYPE xy
@ s0 legend "{term}"
"""


def _touch(path, text=''):
    with open(path, 'w') as f:
        f.write(text)


def _replica_of(path):
    numbered = [part for part in path.split(os.sep) if part.isdigit()]
    return numbered[-1] if numbered else None


class FakeEngine:
    """
    Stands in for GromacsEngine: records every call and writes the files the
    corresponding GROMACS command would write.

    fail_tools fails a tool everywhere; fail_in fails (replica, tool) pairs
    and fail_mdrun (replica, deffnm) pairs, replica being the folder name.
    """

    def __init__(self, fail_mdrun=(), fail_tools=(), fail_in=(), empty_xvg=False, prev_checkpoints=False):
        self.calls = []
        self.log_files = []
        self.fail_mdrun = set(fail_mdrun)
        self.fail_tools = set(fail_tools)
        self.fail_in = set(fail_in)
        self.empty_xvg = empty_xvg
        self.prev_checkpoints = prev_checkpoints

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))
        if name in self.fail_tools:
            raise GromacsError(1, f"{name} failed")
        if (_replica_of(kwargs.get('o', '')), name) in self.fail_in:
            raise GromacsError(1, f"{name} failed")

    def calls_to(self, name):
        return [kwargs for tool, kwargs in self.calls if tool == name]

    def set_log_file(self, filename):
        self.log_files.append(filename)

    def pdb2gmx(self, **kwargs):
        self._record('pdb2gmx', kwargs)
        _touch(kwargs['o'])
        _touch(kwargs['p'], '#include "posre.itp"\n')
        _touch(kwargs['i'])

    def editconf(self, **kwargs):
        self._record('editconf', kwargs)
        _touch(kwargs['o'])

    def solvate(self, **kwargs):
        self._record('solvate', kwargs)
        _touch(kwargs['o'])

    def grompp(self, **kwargs):
        self._record('grompp', kwargs)
        for key in ('f', 'c', 'p'):
            assert os.path.exists(kwargs[key]), kwargs[key]
        _touch(kwargs['o'])

    def genion(self, **kwargs):
        self._record('genion', kwargs)
        _touch(kwargs['o'])

    def energy(self, **kwargs):
        self._record('energy', kwargs)
        term = kwargs['input'][0]
        rows = ''
        if not self.empty_xvg:
            rows = ''.join(f"{t:10.3f} {300.0 + (t % 3):12.4f}\n" for t in range(0, 40, 2))
        _touch(kwargs['o'], XVG_HEADER.format(term=term) + rows)

    def convert_tpr(self, **kwargs):
        self._record('convert_tpr', kwargs)
        _touch(kwargs['o'], f"nsteps = {kwargs['nsteps']}\n")

    def mdrun(self, dirname, deffnm, **kwargs):
        self.calls.append(('mdrun', dict(dirname=dirname, deffnm=deffnm, **kwargs)))
        if (os.path.basename(dirname), deffnm) in self.fail_mdrun:
            return 1
        extensions = ['gro', 'edr', 'log', 'trr']
        if deffnm != 'em':
            extensions.append('cpt')
        for ext in extensions:
            _touch(os.path.join(dirname, f"{deffnm}.{ext}"))
        if self.prev_checkpoints and deffnm != 'em':
            _touch(os.path.join(dirname, f"{deffnm}_prev.cpt"))
        return 0


@pytest.fixture
def structure_file(tmp_path):
    path = tmp_path / 'protein.pdb'
    path.write_text("ATOM      1  N   MET A   1      0.000   0.000   0.000  1.00  0.00           N\nEND\n")
    return str(path)


@pytest.fixture
def make_config(tmp_path, structure_file):
    def _make(**overrides):
        params = dict(
            structure_file=structure_file,
            mdp_folder=MDP_FOLDER,
            out_folder=str(tmp_path / 'run'),
            ref_map=str(tmp_path / 'map.mrc'),
            time_ns=50,
            gmx_executable='gmx',
            mpi_launcher='',
        )
        params.update(overrides)
        return WorkflowConfig(**params)
    return _make


@pytest.fixture
def engine():
    return FakeEngine()
