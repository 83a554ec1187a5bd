# Standard library imports
import argparse
import glob
import json
import logging
import os
import platform
import shlex
import shutil
import signal
import sys
import time
from dataclasses import dataclass, field, asdict
from typing import List, Optional

# Third-party imports
import psutil

# GromacsWrapper
import gromacs
import gromacs.environment
import gromacs.run
import gromacs.tools
from gromacs.exceptions import GromacsError

from replica_plots import plot_replica_graphs

# Engine executable and parallel launcher. Edit here or override through the
# environment; they are not command-line options.
GMX_EXECUTABLE = os.environ.get('MDREPLICAS_GMX', 'gmx')
MPI_LAUNCHER = os.environ.get('MDREPLICAS_MPIRUN', '')

# Production length conversion, ns -> nsteps
NS_TO_STEPS = 1000

MDP_TEMPLATES = {
    'ions': 'ions.mdp',
    'minim': 'minim.mdp',
    'nvt': 'nvt.mdp',
    'npt': 'npt.mdp',
    'md': 'md.mdp',
}

REPLICA_SUBFOLDERS = ('eq/mini', 'eq/nvt', 'eq/npt', 'gro', 'graph')

# Energy terms extracted per stage: (term selected in gmx energy, xvg name)
STAGE_ENERGY_TERMS = {
    'mini': [('Potential', 'potential.xvg')],
    'nvt': [('Temperature', 'temperature.xvg')],
    'npt': [('Pressure', 'pressure.xvg'), ('Volume', 'volume.xvg')],
}


class StageError(RuntimeError):
    """An engine invocation failed inside a workflow stage."""

    def __init__(self, stage, message):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


@dataclass(frozen=True)
class WorkflowConfig:
    structure_file: str
    cores: int = 1
    replicas: int = 1
    box_type: str = 'dodecahedron'
    distance: float = 1.0
    time_ns: float = 100.0
    force_field: str = 'amber99sb-ildn'
    water_model: str = 'tip3p'
    ref_map: Optional[str] = 'map.mrc'
    mdp_folder: str = ''
    out_folder: str = '.'
    gmx_executable: str = GMX_EXECUTABLE
    mpi_launcher: str = MPI_LAUNCHER
    run_production: bool = False

    @property
    def production_steps(self):
        return int(round(self.time_ns * NS_TO_STEPS))

    def mdp(self, key):
        return os.path.join(self.mdp_folder, MDP_TEMPLATES[key])


@dataclass
class SystemFiles:
    base_name: str
    topology: str
    coordinates: str
    includes: List[str] = field(default_factory=list)


@dataclass
class StageResult:
    name: str
    directory: str
    tpr: str
    gro: str
    edr: Optional[str] = None
    cpt: Optional[str] = None
    plot_data: List[str] = field(default_factory=list)


@dataclass
class ReplicaResult:
    index: int
    directory: str
    stages: List[StageResult] = field(default_factory=list)
    production_tpr: Optional[str] = None
    production_steps: Optional[int] = None
    ref_map_copied: bool = False
    plots: List[str] = field(default_factory=list)
    succeeded: bool = False
    error: Optional[str] = None


class LaunchedMDrunner(gromacs.run.MDrunner):
    """MDrunner that prefixes mdrun with a configurable MPI launcher."""

    def mpicommand(self, *args, **kwargs):
        ncores = kwargs.pop('ncores', 1)
        return shlex.split(self.mpiexec) + ['-np', str(ncores)]


class GromacsEngine:
    """
    Thin front end over GromacsWrapper bound to one GROMACS driver.

    Every call goes through a GromacsWrapper tool, so a non-zero exit status
    raises GromacsError. The output of the tools is captured to the file set
    with set_log_file().
    """

    def __init__(self, config, logger):
        self.config = config
        self.logger = logger
        self._tools = {}
        gromacs.environment.flags['capture_output'] = "file"

    def set_log_file(self, filename):
        gromacs.environment.flags['capture_output_filename'] = filename

    def tool(self, name):
        if name not in self._tools:
            clsname = ''.join(part.capitalize() for part in name.split('-'))
            tool_cls = gromacs.tools.tool_factory(clsname, name, self.config.gmx_executable)
            self._tools[name] = tool_cls()
            self.logger.debug(f"Using GROMACS tool: {self.config.gmx_executable} {name}")
        return self._tools[name]

    def pdb2gmx(self, **kwargs):
        if self.config.force_field == 'user':
            # Force field menu must reach the terminal
            previous = gromacs.environment.flags['capture_output']
            gromacs.environment.flags['capture_output'] = False
            try:
                return self.tool('pdb2gmx')(water=self.config.water_model, **kwargs)
            finally:
                gromacs.environment.flags['capture_output'] = previous
        return self.tool('pdb2gmx')(ff=self.config.force_field, water=self.config.water_model, **kwargs)

    def editconf(self, **kwargs):
        return self.tool('editconf')(**kwargs)

    def solvate(self, **kwargs):
        return self.tool('solvate')(**kwargs)

    def grompp(self, **kwargs):
        return self.tool('grompp')(**kwargs)

    def genion(self, **kwargs):
        return self.tool('genion')(**kwargs)

    def energy(self, **kwargs):
        return self.tool('energy')(**kwargs)

    def convert_tpr(self, **kwargs):
        return self.tool('convert-tpr')(**kwargs)

    def mdrun(self, dirname, deffnm, **kwargs):
        """
        Run mdrun in dirname with -deffnm deffnm and return its exit code.

        Without a launcher mdrun gets -nt cores; with one the command becomes
        ``<launcher> -np cores <gmx> mdrun -ntomp 1``.
        """
        launcher = self.config.mpi_launcher
        runner_cls = type('ConfiguredMDrunner', (LaunchedMDrunner,), {
            'mdrun': f"{self.config.gmx_executable} mdrun",
            'mpiexec': launcher or None,
        })
        if launcher:
            runner = runner_cls(dirname, deffnm=deffnm, v=True, ntomp=1, **kwargs)
            return runner.run(ncores=self.config.cores)
        runner = runner_cls(dirname, deffnm=deffnm, v=True, nt=self.config.cores, **kwargs)
        return runner.run()


def create_logger(outFolder, noconsoleHandler=False):
    """
    Create the workflow logger, writing to calc.log in outFolder.

    Handlers left over from an earlier run in the same process are closed
    first, so every run logs only to its own output folder.

    Parameters:
    - outFolder (str): The folder where log files will be saved.
    - noconsoleHandler (bool): Whether to skip the console handler (default is False).

    Returns:
    - logger (logging.Logger): The configured logger object.
    """
    # If the folder does not exist, create it
    if not os.path.exists(outFolder):
        os.makedirs(outFolder)

    # Configure logging format
    loggingFormat = '%(asctime)s,%(msecs)d %(levelname)-8s [%(filename)s:%(lineno)d] %(message)s'
    logFile = os.path.join(os.path.abspath(outFolder), 'calc.log')

    logger = logging.getLogger('mdreplicas')
    logger.setLevel(logging.DEBUG)
    close_logger(logger)

    formatter = logging.Formatter(loggingFormat, datefmt='%d-%m-%Y:%H:%M:%S')
    handlers = [logging.FileHandler(logFile)]
    if not noconsoleHandler:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def close_logger(logger):
    # Clear handlers to avoid memory leak
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def structure_basename(structure_file):
    """Return the structure file name with its final extension removed."""
    return os.path.splitext(os.path.basename(structure_file))[0]


def validate_structure_file(structure_file):
    if not os.path.isfile(structure_file):
        print(f"Error: structure file {structure_file} not found", file=sys.stderr)
        sys.exit(1)


def prepare_system(config, engine, logger):
    """
    Build the topology, solvate the box and neutralise it with ions.

    Parameters:
    - config (WorkflowConfig): The workflow configuration.
    - engine (GromacsEngine): The GROMACS front end.
    - logger (logging.Logger): The logger object for logging messages.

    Returns:
    - SystemFiles: Shared files consumed read-only by every replica.

    Raises:
    - StageError: If any of the GROMACS commands fails.
    """
    out_folder = config.out_folder
    base = structure_basename(config.structure_file)
    engine.set_log_file(os.path.join(out_folder, "gromacs.log"))

    processed = os.path.join(out_folder, f"{base}_processed.gro")
    newbox = os.path.join(out_folder, f"{base}_newbox.gro")
    solvated = os.path.join(out_folder, f"{base}_solv.gro")
    ionized = os.path.join(out_folder, f"{base}_solv_ions.gro")
    topology = os.path.join(out_folder, "topol.top")
    ions_tpr = os.path.join(out_folder, "ions.tpr")

    if config.force_field == 'user':
        logger.info("Force field will be selected interactively.")
    else:
        logger.info(f"Using force field: {config.force_field}")
    logger.info(f"Using water model: {config.water_model}")

    try:
        engine.pdb2gmx(f=config.structure_file, o=processed, p=topology,
                       i=os.path.join(out_folder, "posre.itp"), ignh=True)
        logger.info("pdb2gmx command completed.")
        engine.editconf(f=processed, o=newbox, c=True, d=config.distance, bt=config.box_type)
        logger.info(f"editconf command completed ({config.box_type} box, {config.distance} nm).")
        engine.solvate(cp=newbox, cs="spc216.gro", o=solvated, p=topology)
        logger.info("solvate command completed.")
        engine.grompp(f=config.mdp('ions'), c=solvated, p=topology, o=ions_tpr)
        logger.info("grompp for ions command completed.")
        engine.genion(s=ions_tpr, o=ionized, p=topology, pname='NA', nname='CL',
                      neutral=True, input=('SOL',))
        logger.info("genion command completed.")
    except (GromacsError, OSError) as e:
        raise StageError('system preparation', str(e)) from e

    includes = sorted(glob.glob(os.path.join(out_folder, '*.itp')))
    logger.info(f"Found {len(includes)} topology include files")
    return SystemFiles(base_name=base, topology=topology, coordinates=ionized, includes=includes)


def stage_replica_folder(config, system, index, logger):
    """
    Create the replica folder and copy the shared inputs into it.

    Returns the replica folder and whether the reference map was copied.
    """
    replica_dir = os.path.join(config.out_folder, str(index))
    os.makedirs(replica_dir, exist_ok=True)
    for sub in REPLICA_SUBFOLDERS:
        os.makedirs(os.path.join(replica_dir, sub), exist_ok=True)

    shutil.copytree(config.mdp_folder, os.path.join(replica_dir, 'mdp'), dirs_exist_ok=True)
    for path in [system.coordinates, system.topology] + list(system.includes):
        shutil.copy(path, replica_dir)

    map_copied = False
    if config.ref_map:
        try:
            shutil.copy(config.ref_map, replica_dir)
            map_copied = True
        except OSError as e:
            logger.warning(f"Replica {index}: reference map not copied ({e})")
    return replica_dir, map_copied


def _move(path, dest_dir):
    target = os.path.join(dest_dir, os.path.basename(path))
    shutil.move(path, target)
    return target


def relocate_outputs(replica_dir, deffnm, stage_dir):
    """
    Move the files written by mdrun -deffnm into their final folders.

    The coordinates go to gro/, everything else with the same prefix
    (including <deffnm>_prev.cpt) goes to stage_dir. Returns a dict of the
    <deffnm>.<ext> files keyed by extension.
    """
    moved = {}
    os.makedirs(stage_dir, exist_ok=True)
    for path in sorted(glob.glob(os.path.join(replica_dir, f"{deffnm}[._]*"))):
        stem, ext = os.path.splitext(os.path.basename(path))
        ext = ext.lstrip('.')
        if stem == deffnm and ext == 'gro':
            target = _move(path, os.path.join(replica_dir, 'gro'))
        else:
            target = _move(path, stage_dir)
        if stem == deffnm:
            moved[ext] = target
    return moved


def extract_energy_terms(engine, edr, graph_dir, terms):
    """Write one xvg per energy term by piping the term name to gmx energy."""
    outputs = []
    for term, xvg_name in terms:
        xvg = os.path.join(graph_dir, xvg_name)
        engine.energy(f=edr, o=xvg, input=(term,))
        outputs.append(xvg)
    return outputs


def run_stage(config, engine, replica_dir, name, deffnm, mdp_key, coordinates,
              restraint=None, checkpoint=None, logger=None):
    """
    grompp + mdrun + relocation + energy extraction for one equilibration stage.

    Parameters:
    - name (str): Stage folder name under eq/ (mini, nvt, npt).
    - deffnm (str): Default file name passed to mdrun.
    - mdp_key (str): Key of the run-parameter template.
    - coordinates (str): Input coordinates.
    - restraint (str): Position restraint reference, if any.
    - checkpoint (str): Checkpoint of the previous stage, if any.

    Returns:
    - StageResult
    """
    stage_dir = os.path.join(replica_dir, 'eq', name)
    tpr = os.path.join(replica_dir, f"{deffnm}.tpr")
    grompp_args = dict(f=os.path.join(replica_dir, 'mdp', MDP_TEMPLATES[mdp_key]),
                       c=coordinates, p=os.path.join(replica_dir, 'topol.top'), o=tpr)
    if restraint:
        grompp_args['r'] = restraint
    if checkpoint:
        grompp_args['t'] = checkpoint

    try:
        engine.grompp(**grompp_args)
        logger.info(f"grompp for {name} command completed.")
        rc = engine.mdrun(replica_dir, deffnm)
    except (GromacsError, OSError) as e:
        raise StageError(name, str(e)) from e
    if rc != 0:
        raise StageError(name, f"mdrun exited with status {rc}")
    logger.info(f"mdrun for {name} command completed.")

    moved = relocate_outputs(replica_dir, deffnm, stage_dir)
    if 'gro' not in moved:
        raise StageError(name, f"mdrun did not write {deffnm}.gro")

    result = StageResult(name=name, directory=stage_dir, tpr=moved.get('tpr', tpr),
                         gro=moved['gro'], edr=moved.get('edr'), cpt=moved.get('cpt'))
    if result.edr:
        try:
            result.plot_data = extract_energy_terms(engine, result.edr, os.path.join(replica_dir, 'graph'),
                                                    STAGE_ENERGY_TERMS[name])
        except (GromacsError, OSError) as e:
            raise StageError(name, f"energy extraction failed: {e}") from e
    return result


def prepare_production(config, engine, replica_dir, npt, logger):
    """
    Build the production run input from the NPT outputs and set its length.

    Returns the path of the run input and the step count written into it.
    """
    tpr = os.path.join(replica_dir, "md_0_1.tpr")
    nsteps = config.production_steps
    try:
        engine.grompp(f=os.path.join(replica_dir, 'mdp', MDP_TEMPLATES['md']), c=npt.gro, t=npt.cpt,
                      p=os.path.join(replica_dir, 'topol.top'), o=tpr)
        logger.info("grompp for production command completed.")
        engine.convert_tpr(s=tpr, nsteps=nsteps, o=tpr)
        logger.info(f"Production run input set to {nsteps} steps ({config.time_ns} ns).")
    except (GromacsError, OSError) as e:
        raise StageError('production', str(e)) from e

    if config.run_production:
        logger.info("Starting production run...")
        try:
            rc = engine.mdrun(replica_dir, 'md_0_1')
        except (GromacsError, OSError) as e:
            raise StageError('production', str(e)) from e
        if rc != 0:
            raise StageError('production', f"mdrun exited with status {rc}")
        logger.info("mdrun for production command completed.")
        moved = relocate_outputs(replica_dir, 'md_0_1', os.path.join(replica_dir, 'md'))
        tpr = moved.get('tpr', tpr)
    return tpr, nsteps


def run_replica(config, engine, system, index, logger):
    """
    Run minimization, NVT and NPT equilibration for one replica and prepare
    its production input.

    Failures are caught here: the returned ReplicaResult carries the error and
    the workflow moves on to the next replica.
    """
    result = ReplicaResult(index=index, directory=os.path.join(config.out_folder, str(index)))
    logger.info(f"### Replica {index}/{config.replicas} ###")
    try:
        replica_dir, result.ref_map_copied = stage_replica_folder(config, system, index, logger)
        engine.set_log_file(os.path.join(replica_dir, "gromacs.log"))
        start = os.path.join(replica_dir, os.path.basename(system.coordinates))

        mini = run_stage(config, engine, replica_dir, 'mini', 'em', 'minim', start, logger=logger)
        result.stages.append(mini)
        nvt = run_stage(config, engine, replica_dir, 'nvt', 'nvt', 'nvt', mini.gro,
                        restraint=mini.gro, logger=logger)
        result.stages.append(nvt)
        npt = run_stage(config, engine, replica_dir, 'npt', 'npt', 'npt', nvt.gro,
                        restraint=nvt.gro, checkpoint=nvt.cpt, logger=logger)
        result.stages.append(npt)

        result.production_tpr, result.production_steps = prepare_production(config, engine, replica_dir, npt, logger)
        try:
            result.plots = plot_replica_graphs(os.path.join(replica_dir, 'graph'), title_prefix=f"Replica {index}")
        except ValueError as e:
            logger.warning(f"Replica {index}: could not generate plots ({e})")
        result.succeeded = True
        logger.info(f"Replica {index} completed successfully.")
    except (StageError, OSError) as e:
        result.error = str(e)
        logger.error(f"Replica {index} failed: {e}")
    return result


def system_info():
    try:
        return {
            'platform': platform.system(),
            'cpu_count': psutil.cpu_count(),
            'memory_gb': round(psutil.virtual_memory().total / (1024**3), 1),
            'python_version': platform.python_version(),
        }
    except (OSError, AttributeError):
        return {'platform': platform.system(), 'python_version': platform.python_version()}


def write_summary(config, system, results, logger, error=None):
    """
    Write workflow_summary.json describing inputs, shared files and the
    outcome of every replica.
    """
    report_file = os.path.join(config.out_folder, 'workflow_summary.json')
    report = {
        'workflow_info': {
            'timestamp': time.strftime('%Y-%m-%d %H:%M:%S'),
            'output_folder': config.out_folder,
        },
        'input_parameters': asdict(config),
        'system_info': system_info(),
        'shared_files': asdict(system) if system else None,
        'replicas': [asdict(r) for r in results],
        'succeeded': error is None and all(r.succeeded for r in results),
        'error': error,
    }
    with open(report_file, 'w') as f:
        json.dump(report, f, indent=2)
    logger.info(f'Workflow summary report generated: {report_file}')
    return report_file


def run_workflow(config, engine=None, noconsole_handler=False):
    """
    Run the complete workflow and return the process exit status.

    Parameters:
    - config (WorkflowConfig): The workflow configuration.
    - engine (GromacsEngine): Optional engine; created from config if omitted.
    - noconsole_handler (bool): Log to calc.log only.

    Returns:
    - int: 0 if every replica succeeded, 1 otherwise.
    """
    start_time = time.time()
    validate_structure_file(config.structure_file)

    logger = create_logger(config.out_folder, noconsole_handler)
    logger.info('### Replica workflow started ###')
    info = system_info()
    if 'cpu_count' in info:
        logger.info(f"System resources: {info['cpu_count']} CPU cores, {info['memory_gb']:.1f} GB memory")
        if info['cpu_count'] and config.cores > info['cpu_count']:
            logger.warning(f"Requested {config.cores} cores but only {info['cpu_count']} are available")
    if config.mpi_launcher:
        logger.info(f"mdrun will be launched with: {config.mpi_launcher} -np {config.cores}")

    if engine is None:
        engine = GromacsEngine(config, logger)

    results = []
    system = None
    try:
        system = prepare_system(config, engine, logger)
    except StageError as e:
        logger.error(f"Error encountered during system preparation: {e}")
        write_summary(config, system, results, logger, error=str(e))
        close_logger(logger)
        return 1

    for index in range(1, config.replicas + 1):
        results.append(run_replica(config, engine, system, index, logger))

    write_summary(config, system, results, logger)
    failed = [r.index for r in results if not r.succeeded]
    if failed:
        logger.error(f"{len(failed)} of {len(results)} replicas failed: {', '.join(map(str, failed))}")
    else:
        logger.info(f"All {len(results)} replicas completed successfully.")
    logger.info('Elapsed time: {:.2f} seconds'.format(time.time() - start_time))
    close_logger(logger)
    return 1 if failed else 0


class WorkflowArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        if message.startswith('unrecognized arguments'):
            message = 'Invalid option: ' + message.split(':', 1)[1].strip()
        self.exit(1, f"{self.prog}: {message}\n")


def _positive_int(value):
    ivalue = int(value)
    if ivalue < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _positive_float(value):
    fvalue = float(value)
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive number")
    return fvalue


def parse_args(argv=None):
    script_folder = os.path.dirname(os.path.realpath(__file__))
    parser = WorkflowArgumentParser(
        prog='mdreplicas',
        description="Prepare a solvated protein with GROMACS and equilibrate independent replicas",
        epilog="""
Example:
  mdreplicas -f protein.pdb -n 8 -r 3 -t 50

Each replica gets its own folder (1, 2, ...) holding eq/mini, eq/nvt, eq/npt,
gro and graph. The GROMACS executable and MPI launcher are read from the
MDREPLICAS_GMX and MDREPLICAS_MPIRUN environment variables.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument("-f", "--structure", type=str, help="Input structure file (PDB, required)")
    parser.add_argument("-n", "--cores", type=_positive_int, default=1, help="Number of cores for mdrun (default is 1)")
    parser.add_argument("-r", "--replicas", type=_positive_int, default=1, help="Number of replicas (default is 1)")
    parser.add_argument("-b", "--box_type", type=str, default="dodecahedron",
                        choices=["triclinic", "cubic", "dodecahedron", "octahedron"],
                        help="Box type for editconf (default is dodecahedron)")
    parser.add_argument("-d", "--distance", type=_positive_float, default=1.0,
                        help="Distance between the solute and the box in nm (default is 1.0)")
    parser.add_argument("-t", "--time", type=_positive_float, default=100.0,
                        help="Production simulation time in ns (default is 100)")
    parser.add_argument("-ff", "--force_field", type=str, default="amber99sb-ildn",
                        help='Force field for pdb2gmx, or "user" to choose interactively (default is amber99sb-ildn)')
    parser.add_argument("-m", "--map", type=str, default="map.mrc",
                        help="Reference density map copied into each replica if present (default is map.mrc)")
    parser.add_argument("--water_model", type=str, default="tip3p", help="Water model for pdb2gmx (default is tip3p)")
    parser.add_argument("--mdp_folder", type=str, default=os.path.join(script_folder, 'mdp_files'),
                        help="Folder with ions.mdp, minim.mdp, nvt.mdp, npt.mdp and md.mdp")
    parser.add_argument("-o", "--out_folder", type=str, default=".", help="Output folder (default is the current folder)")
    parser.add_argument("--run_production", action="store_true", help="Also run the production simulation")
    parser.add_argument("--noconsole_handler", action="store_true", help="Do not add console handler to the logger")

    if argv is None:
        argv = sys.argv[1:]
    if len(argv) == 0:
        parser.print_usage(sys.stderr)
        sys.exit(1)

    # Unknown options are reported before a missing structure file
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        parser.error(f"unrecognized arguments: {' '.join(unknown)}")
    if args.structure is None:
        parser.error("the following arguments are required: -f/--structure")
    return args


def config_from_args(args):
    return WorkflowConfig(
        structure_file=args.structure,
        cores=args.cores,
        replicas=args.replicas,
        box_type=args.box_type,
        distance=args.distance,
        time_ns=args.time,
        force_field=args.force_field,
        water_model=args.water_model,
        ref_map=args.map,
        mdp_folder=os.path.abspath(args.mdp_folder),
        out_folder=os.path.abspath(args.out_folder),
        run_production=args.run_production,
    )


def main(argv=None):
    args = parse_args(argv)
    config = config_from_args(args)
    return run_workflow(config, noconsole_handler=args.noconsole_handler)


if __name__ == "__main__":
    def global_signal_handler(sig, frame):
        print('Signal caught in main. Exiting...')
        sys.exit(1)

    signal.signal(signal.SIGINT, global_signal_handler)
    signal.signal(signal.SIGTERM, global_signal_handler)
    sys.exit(main())
