# main_runner.py
import importlib.util
import os

import questionary
from rich.console import Console

from config import MODULE_PATH

console = Console()


def list_task_modules(module_path=MODULE_PATH):
    """Task files under modules/, sorted, without private helpers."""
    if not os.path.isdir(module_path):
        return []
    return sorted(
        f for f in os.listdir(module_path)
        if f.endswith('.py') and not f.startswith('_')
    )


def load_and_run_module(module_path):
    """
    Load a task module from its path and run its main().
    """
    module_name = os.path.basename(module_path).replace('.py', '')

    spec = importlib.util.spec_from_file_location(module_name, module_path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    if hasattr(module, 'main'):
        module.main()
    else:
        console.log(f"[yellow]No main() function found in {module_name}. Skipping...[/yellow]")


def run_selected_module():
    """
    Let the user pick a task (swap, allowance check) and run it.
    """
    if not os.path.isdir(MODULE_PATH):
        console.log(f"[red]The path '{MODULE_PATH}' is not a valid directory.[/red]")
        return

    python_files = list_task_modules()
    if not python_files:
        console.log("[red]No task modules found.[/red]")
        return

    choices = [
        questionary.Choice(
            title=f"{idx + 1}. {os.path.splitext(fname)[0]}",
            value=fname
        )
        for idx, fname in enumerate(python_files)
    ]

    selected_file = questionary.select(
        "Select the task you want to run:",
        choices=choices
    ).ask()

    if not selected_file:
        console.log("No task selected.")
        return

    module_path = os.path.join(MODULE_PATH, selected_file)
    try:
        load_and_run_module(module_path)
    except Exception as e:
        console.log(f"[bold red]Error running {module_path}: {e}[/bold red]")
        raise


if __name__ == "__main__":
    run_selected_module()
