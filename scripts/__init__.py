"""Scripts for Easy CPD.

Files:
    __init__.py: This file.
    registration.ini: Initialization file for `run_registration.py`.
    run_registration.py: Performs CPD point set registration between two point files.

Functions:
    run_registration.eval_config: Evaluates data types of a ConfigParser object.
    run_registration.print_config_dict: Pretty-prints a config dict created by 'eval_config'.
    run_registration.merge_args: Overrides config file values with command line arguments.
    run_registration.get_transform: Instantiates the transform selected in the config.
    run_registration.run: Runs the registration.
"""
