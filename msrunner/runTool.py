"""
msrunner runs one analysis job step of an external mass spectrometry search
tool (FragPipe or a Sequest PVM cluster search) in a working directory ,
supervises the process and reports progress , status and a closeout code.

usage:
    python -m msrunner.runTool fragpipe <work dir> -dataset name -fasta db.fasta -datasets datasets.csv -workflow fp.workflow
    python -m msrunner.runTool sequest <work dir> -dataset name -job 1234 -parm sequest.params -transfer /share/transfer

the exit code of the process is the closeout code.

VERSION history:
    1.0 - FragPipe job steps with console progress
    1.1 - Sequest cluster searches , out file appender and resume from staged results
    1.2 - node health checks , stall state machine and pool reset retries
"""

import logging
import sys
import time
from argparse import ArgumentParser

from msrunner import settings
from msrunner.closeOut import CloseOutType
from msrunner.fragpipeRunner import FragPipeRunner
from msrunner.jobContext import JobContext, header, setup_logging
from msrunner.sequestCluster import SequestClusterRunner


def build_parser():
    parser = ArgumentParser(prog="msrunner")
    subparsers = parser.add_subparsers(dest="tool", required=True)

    fragpipe = subparsers.add_parser("fragpipe", help="run FragPipe")
    fragpipe.add_argument('working_directory', help="job step working directory", metavar='string')
    fragpipe.add_argument('-dataset', dest="dataset", default="FragPipe", help="dataset or data package name", metavar='string')
    fragpipe.add_argument('-job', dest="job", default=0, type=int, help="job number", metavar=int)
    fragpipe.add_argument('-fasta', dest="fasta", default="", help="FASTA file with decoy proteins", metavar='file')
    fragpipe.add_argument('-datasets', dest="dataset_list", default="", help="CSV file with the columns Dataset, DatasetFile, Experiment, DatasetType", metavar='file')
    fragpipe.add_argument('-workflow', dest="workflow", default="", help="FragPipe workflow file name (in the working directory)", metavar='file')
    fragpipe.add_argument('-split', dest="split", default=1, type=int, help="number of database splits", metavar=int)
    fragpipe.add_argument('-memory', dest="memory_mb", default=settings.FRAGPIPE_MEMORY_SIZE_MB, type=int, help="FragPipe memory size in MB", metavar=int)
    fragpipe.add_argument('-collections', dest="protein_collections", default="na", help="protein collection list", metavar='string')
    fragpipe.add_argument('-skip-memory-check', dest="skip_memory_check", action="store_true", help="do not compare the memory size with the free memory")
    fragpipe.add_argument('-program', dest="program", default=str(settings.fragpipe_program_path), help="path to the FragPipe program", metavar='file')

    sequest = subparsers.add_parser("sequest", help="run a Sequest cluster search")
    sequest.add_argument('working_directory', help="job step working directory with the .dta files", metavar='string')
    sequest.add_argument('-dataset', dest="dataset", required=True, help="dataset name", metavar='string')
    sequest.add_argument('-job', dest="job", default=0, type=int, help="job number", metavar=int)
    sequest.add_argument('-parm', dest="parm_file", required=True, help="Sequest parameter file name (in the working directory)", metavar='file')
    sequest.add_argument('-transfer', dest="transfer_folder", default="", help="folder for staged partial results", metavar='string')
    sequest.add_argument('-nodes', dest="expected_nodes", default=settings.SEQUEST_NODE_COUNT_EXPECTED, type=int, help="expected number of Sequest nodes", metavar=int)
    sequest.add_argument('-ignore-active-errors', dest="ignore_active_errors", action="store_true", help="do not reset the pool when nodes go inactive")
    sequest.add_argument('-program', dest="program", default=str(settings.sequest_program_path), help="path to the Sequest program", metavar='file')
    sequest.add_argument('-pvm', dest="pvm_folder", default=str(settings.pvm_folder), help="folder with the PVM program and scripts", metavar='string')

    for sub in (fragpipe, sequest):
        sub.add_argument('-debug', dest="debug", action="store_true", help="debug level logging and console echo")
    return parser


def job_params(args):
    if args.tool == "fragpipe":
        return {"FastaFile": args.fasta,
                "ProteinCollectionList": args.protein_collections,
                "DatasetList": args.dataset_list,
                "ParamFileName": args.workflow,
                "DatabaseSplitCount": args.split,
                "FragPipeMemorySizeMB": args.memory_mb,
                "SkipFreeMemoryCheck": args.skip_memory_check,
                "FragPipeProgLoc": args.program}
    return {"ParmFileName": args.parm_file,
            "SequestNodeCountExpected": args.expected_nodes,
            "IgnoreSequestNodeCountActiveErrors": args.ignore_active_errors,
            "SeqProgLoc": args.program,
            "PVMProgLoc": args.pvm_folder}


def run(args):
    params = job_params(args)
    ctx = JobContext(args.working_directory, args.dataset, args.job, params,
                     transfer_folder=getattr(args, "transfer_folder", "") or None,
                     debug_level=2 if args.debug else 1)
    listener = setup_logging(ctx.work_dir, args.debug)
    start_time = time.time()
    try:
        tool_name = "FragPipe" if args.tool == "fragpipe" else "Sequest cluster search"
        print(header(tool_name))
        logging.info(header(tool_name))
        logging.info("parameters:")
        for name, value in params.items():
            logging.info(f"    {name} = {value}")
        try:
            ctx.write_job_parameters()
        except OSError as err:
            ctx.messages.error(f"Error writing {ctx.job_parameters_path().name}: {err}")
            ctx.update_status(closeout=CloseOutType.FAILED)
            return CloseOutType.FAILED

        if args.tool == "fragpipe":
            runner = FragPipeRunner(ctx)
        else:
            runner = SequestClusterRunner(ctx)
        result = runner.run_tool()

        elapsed = (time.time() - start_time) / 60.0
        summary = f"{tool_name} finished with {CloseOutType(result).name} after {elapsed:.1f} minutes; progress {ctx.progress:.1f}%"
        print(summary)
        logging.info(summary)
        if ctx.messages.has_error:
            print(ctx.messages.full_message())
            logging.info(f"message: {ctx.messages.full_message()}")
        if ctx.need_to_abort:
            logging.error("local processing is disabled for this job; it needs to be inspected before it is retried")
        return result
    finally:
        listener.stop()


def main(argv=None):
    args = build_parser().parse_args(argv)
    return int(run(args))


if __name__ == "__main__":
    sys.exit(main())
