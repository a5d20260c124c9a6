import struct
import sys

from rich.console import Console
from rich.markup import escape

from fsapi import ENTRY_DIR, get_filesystem, set_filesystem
from image import save_image
from main import DEFAULT_IMAGE, load_filesystem

EXIT_COMMAND = "exit()"

console = Console()
commands = []


class InvalidCommand(Exception):
    """Unknown command or wrong arguments"""


def command(name, description, nargs=(1,), mutates=False):
    """Register a handler. nargs lists the accepted argument counts;
    mutating commands trigger an image save once they have run."""
    def decorator(func):
        commands.append({
            'name': name,
            'func': func,
            'description': description,
            'nargs': nargs,
            'mutates': mutates,
        })
        return func
    return decorator


def plain(out, text):
    out.print(text, markup=False, highlight=False)


@command('help', 'Show available commands', nargs=(0,))
def handle_help(args, out):
    out.print("Available commands:")
    for cmd in sorted(commands, key=lambda x: x['name']):
        out.print(f"  [bold]{escape(cmd['name'])}[/bold]: {escape(cmd['description'])}")
    out.print(f"  [bold]{EXIT_COMMAND}[/bold]: End the session")


@command('pwd', 'Print current working directory', nargs=(0,))
def handle_pwd(args, out):
    plain(out, get_filesystem().cwd.path)


@command('cd', 'Change current directory, .. goes to the parent', mutates=True)
def handle_cd(args, out):
    get_filesystem().change_directory(args[0])


@command('ls', 'List directory contents, -s adds file sizes', nargs=(0, 1))
def handle_ls(args, out):
    if args and args[0] != "-s":
        raise InvalidCommand(args[0])
    fs = get_filesystem()
    if args:
        for kind, name, size in fs.list_directory(with_sizes=True):
            if kind == ENTRY_DIR:
                plain(out, f"[{kind}] {name}")
            else:
                plain(out, f"[{kind}] {name} {size}")
    else:
        for kind, name in fs.list_directory():
            plain(out, f"[{kind}] {name}")


@command('mkdir', 'Create a directory', mutates=True)
def handle_mkdir(args, out):
    get_filesystem().make_directory(args[0])


@command('rm', 'Remove a directory (blocks of nested files stay allocated)', mutates=True)
def handle_rm(args, out):
    get_filesystem().remove_directory(args[0])
    plain(out, f"Directory removed: {args[0]}")


@command('rmr', 'Remove a directory and free the blocks of its files', mutates=True)
def handle_rmr(args, out):
    get_filesystem().remove_directory(args[0], recursive=True)
    plain(out, f"Directory removed: {args[0]}")


@command('rmf', 'Remove a file and free its blocks', mutates=True)
def handle_rmf(args, out):
    freed = get_filesystem().remove_file(args[0])
    plain(out, f"File removed: {args[0]} ({len(freed)} blocks freed)")


@command('touch', 'Create an empty file, or append data to an existing one', nargs=(1, 2), mutates=True)
def handle_touch(args, out):
    fs = get_filesystem()
    if len(args) == 1:
        fs.create_file(args[0])
        plain(out, f"File created: {args[0]}")
    else:
        fs.write_file(args[0], args[1].encode("utf-8"))
        plain(out, f"Data written to file: {args[0]}")


@command('cat', 'Display file contents')
def handle_cat(args, out):
    data = get_filesystem().read_file(args[0])
    plain(out, data.decode("utf-8", errors="ignore"))


@command('df', 'Display block usage', nargs=(0,))
def handle_df(args, out):
    fs = get_filesystem()
    used = fs.used_blocks()
    total = fs.total_blocks
    out.print("Blocks     Used   Available Use%  Block size")
    out.print(f"{total:<10d} {used:<6d} {total - used:<9d} {used * 100 // total:>3d}%  {fs.block_size}")


def save(image_path, out):
    try:
        save_image(image_path, get_filesystem())
    except (OSError, ValueError, struct.error) as e:
        out.print(f"[red]Error saving filesystem to {escape(image_path)}: {escape(str(e))}[/red]")


def execute(line, image_path, out=console):
    """Run one command line. Returns False once the session should end."""
    if not line:
        return True
    # Single spaces separate tokens, so "cd  docs" has an empty argument
    parts = line.split(" ")
    command_name, args = parts[0], parts[1:]
    if command_name == EXIT_COMMAND and not args:
        return False

    cmd_entry = next((c for c in commands if c['name'] == command_name), None)
    if cmd_entry is None or len(args) not in cmd_entry['nargs']:
        out.print("Invalid command")
        return True

    try:
        cmd_entry['func'](args, out)
    except InvalidCommand:
        out.print("Invalid command")
        return True
    except (OSError, ValueError) as e:
        out.print(f"[red]{escape(command_name)}: {escape(str(e))}[/red]")
    except Exception as e:
        out.print(f"[bold red]Error:[/bold red] {escape(str(e))}")

    if cmd_entry['mutates']:
        save(image_path, out)
    return True


def repl(image_path, reader=input, out=console):
    """Read and execute commands until exit(), end of input or Ctrl-C"""
    while True:
        try:
            cwd = get_filesystem().cwd.path
            prompt = f"[bold cyan]MSFS>>{escape(cwd)}[/bold cyan][bold white]>[/bold white] "
            out.print(prompt, end="")
            line = reader()
        except EOFError:
            out.print()
            break
        except KeyboardInterrupt:
            out.print("\nExiting...")
            break
        if not execute(line.strip(), image_path, out):
            break


def main():
    image_path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_IMAGE

    fs = load_filesystem(image_path, console)
    if fs is None:
        console.print(escape(f"Create one with: python main.py {image_path} [blocks] [block_size]"))
        return 1
    set_filesystem(fs)
    console.print(f"Filesystem loaded from {escape(image_path)}")
    repl(image_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
