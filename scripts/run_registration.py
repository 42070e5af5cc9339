#!/usr/bin/env python3
"""Performs CPD point set registration between two point files."""
import argparse
import ast
import configparser
import logging
import os
from typing import Any, Dict, List, Union

import numpy as np
import tabulate

from easy_cpd import registration, set_logger_level, utils

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "registration.ini")


def eval_config(config: configparser.ConfigParser) -> Dict[str, Dict[str, Any]]:
    """Evaluates data types of a ConfigParser object.

    Args:
        config: A ConfigParser object.

    Returns:
        A dict of dicts with sections and options identical to 'config' but with evaluated values.
    """
    config_dict = dict()
    for section in config.sections():
        config_dict[section] = dict()
        for option, values in config.items(section):
            try:
                values = ast.literal_eval(values)
            except (ValueError, SyntaxError):
                if values.lower() == "none":
                    values = None
                elif values.lower() in ["true", "false"]:
                    values = values.lower() == "true"
            config_dict[section][option] = values
    return config_dict


def print_config_dict(config_dict: Dict[str, Any], pretty: bool = True) -> None:
    """Pretty-prints a config dict created by 'eval_config'.

    Args:
        config_dict: A config dict created by 'eval_config'.
        pretty: Pretty-print dict keys.
    """
    config_list = list()
    for section in config_dict.keys():
        config_list.append(("", ""))
        config_list.append((section.upper().replace('_', ' ') if pretty else section, ""))
        config_list.append(('-' * len(section), ""))
        for key, value in config_dict[section].items():
            value = str(value)
            config_list.append((key.capitalize().replace('_', ' ') if pretty else key,
                                value.capitalize() if value.lower() in ["true", "false", "none"] and pretty else value))
    print(tabulate.tabulate(config_list))


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Performs CPD point set registration.")
    parser.add_argument("fixed", type=str, help="Path to the fixed (target) points.")
    parser.add_argument("moving", type=str, help="Path to the moving (source) points.")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG, type=str, help="Path to registration config.")
    parser.add_argument("-t", "--transform", choices=["rigid", "nonrigid"], help="The transform to estimate.")
    parser.add_argument("-o", "--outfile", type=str, help="The file to write the registered points to.")
    parser.add_argument("--sigma2", type=float, help="The initial sigma2. Computed from the data if 0.")
    parser.add_argument("--comparer", type=str, help="The name of the comparer to use.")
    parser.add_argument("--max-iterations", type=int, help="Maximum number of iterations.")
    parser.add_argument("--tolerance", type=float, help="Convergence tolerance.")
    parser.add_argument("--outliers", type=float, help="Outlier weight in [0, 1).")
    parser.add_argument("--no-normalize", action="store_true", help="Don't normalize the point sets.")
    parser.add_argument("--correspondence", action="store_true", help="Compute the correspondence vector.")
    parser.add_argument("--beta", type=float, help="Non-rigid affinity kernel width.")
    parser.add_argument("--lambda", dest="lambd", type=float, help="Non-rigid regularization strength.")
    parser.add_argument("--no-scale", action="store_true", help="Don't estimate scale in rigid registration.")
    parser.add_argument("--reflections", action="store_true", help="Allow reflections in rigid registration.")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Get verbose output during execution.")
    parser.add_argument("-d", "--draw", action="store_true", help="Visualize registration results.")
    return parser


def merge_args(config_dict: Dict[str, Dict[str, Any]], args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Overrides config file values with command line arguments that were given.

    Args:
        config_dict: A config dict created by 'eval_config'.
        args: The parsed command line arguments.

    Returns:
        The updated config dict.
    """
    for section in ["runner", "rigid", "nonrigid", "options"]:
        config_dict.setdefault(section, dict())
    runner = config_dict["runner"]
    for option in ["sigma2", "comparer", "max_iterations", "tolerance", "outliers"]:
        if getattr(args, option) is not None:
            runner[option] = getattr(args, option)
    if args.no_normalize:
        runner["normalize"] = False
    if args.correspondence:
        runner["correspondence"] = True
    if args.progress:
        runner["progress"] = True
    if args.no_scale:
        config_dict["rigid"]["scale"] = False
    if args.reflections:
        config_dict["rigid"]["reflections"] = True
    for option in ["beta", "lambd"]:
        if getattr(args, option) is not None:
            config_dict["nonrigid"][option] = getattr(args, option)
    options = config_dict["options"]
    if args.transform is not None:
        options["transform"] = args.transform
    if args.outfile is not None:
        options["outfile"] = args.outfile
    options["verbose"] = args.verbose or options.get("verbose", False)
    options["draw"] = args.draw or options.get("draw", False)
    return config_dict


def get_transform(config_dict: Dict[str, Dict[str, Any]]) -> registration.TransformInterface:
    """Instantiates the transform selected in the `options` section.

    Args:
        config_dict: A config dict created by 'eval_config'.

    Returns:
        The transform.
    """
    transform = str(config_dict["options"].get("transform", "rigid")).lower()
    if transform == "rigid":
        return registration.Rigid(**config_dict.get("rigid", dict()))
    elif transform == "nonrigid":
        return registration.Nonrigid(**config_dict.get("nonrigid", dict()))
    raise ValueError(f"Only `rigid` and `nonrigid` supported as `transform` but is {transform}.")


def run(argv: Union[List[str], None] = None,
        config: Union[configparser.ConfigParser, None] = None) -> Dict[str, Any]:
    """Runs the registration.

    Args:
        argv: Command line arguments. Read from `sys.argv` if not provided.
        config: A ConfigParser object. Read from the `--config` path if not provided.

    Returns:
        The registration result (`result`) and average translation (`average_translation`).
    """
    args = get_parser().parse_args(argv)

    # Read config from argument or file
    if config is None:
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        if not config.read(args.config):
            raise FileNotFoundError(f"No config file found at {args.config}.")

    config_dict = merge_args(eval_config(config), args)
    options = config_dict["options"]

    # Enable verbose output
    if options["verbose"]:
        logging.basicConfig()
        logger.setLevel(logging.DEBUG)
        set_logger_level(logging.DEBUG)
        print_config_dict(config_dict)

    # Load fixed and moving data
    logger.debug("Loading fixed and moving data.")
    fixed, moving = utils.eval_data_pair(fixed=args.fixed, moving=args.moving)

    runner = registration.Runner(get_transform(config_dict),
                                 config=registration.RegistrationConfig.from_dict(config_dict["runner"]))
    result = runner.run(fixed, moving)
    average_translation = utils.get_average_translation(result.points, moving)

    # Print results
    if options.get("print_results", True) or options["verbose"]:
        rows = [("transform", runner.name),
                ("# points (fixed, moving)", f"{len(fixed)}, {len(moving)}"),
                ("iterations", result.iterations),
                ("sigma2", result.sigma2),
                ("runtime [s]", result.runtime),
                ("average translation", np.array2string(average_translation))]
        if isinstance(result, registration.RigidRegistrationResult):
            rows.extend([("scale", result.scale),
                         ("translation", np.array2string(result.translation)),
                         ("rotation", np.array2string(result.rotation))])
        print()
        print("RESULTS:\n=======")
        print(tabulate.tabulate(rows))

    if options.get("outfile") is not None:
        logger.debug(f"Writing registered points to {options['outfile']}.")
        utils.write_point_matrix(options["outfile"], result.points)

    if options["draw"]:
        utils.draw_registration_result(fixed, moving, result.points)

    return {"result": result, "average_translation": average_translation}


def main() -> None:
    run()


if __name__ == "__main__":
    main()
