#!/usr/bin/env python3
"""
Build the FFmpeg GDExtension for Godot.

Fetches a prebuilt FFmpeg (LGPL, Godot flavour) archive, installs a pinned
SCons into a local virtual environment and runs the SCons build in
gdextension_build/ for one or all of the editor, template_release and
template_debug targets.

Prebuilt FFmpeg: https://github.com/EIRTeam/FFmpeg-Builds

Usage:
    python3 build_gdextension.py [target] [platform] [scons_version]
        [ffmpeg_relative_path] [ffmpeg_url_or_path] [ffmpeg_tarball_path]
        [skip_ffmpeg_import] [scons_flags]

For detailed usage instructions, run:
    python3 build_gdextension.py --help
"""

import argparse
import os
import shlex
import shutil
import subprocess
import sys
import tarfile
from pathlib import Path

# Define ANSI color codes
class Colors:
    HEADER = '\033[95m'
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'

def colored_print(message, color, file=None):
    print(f"{color}{message}{Colors.ENDC}", file=file or sys.stdout)


SCONS_VERSION = "4.4.0"
SCONS_FLAGS = "debug_symbols=no"
SCONS_CACHE_DIR = "scons-cache"
SCONS_CACHE_LIMIT = "7168"

TARGETS = ["editor", "template_release", "template_debug"]

FFMPEG_RELATIVE_PATHS = {
    "android": "ffmpeg-master-latest-android-arm64-lgpl-godot",
    "linux": "ffmpeg-master-latest-linux64-lgpl-godot",
}
FFMPEG_URL_TEMPLATE = (
    "https://github.com/EIRTeam/FFmpeg-Builds/releases/"
    "download/latest/{relative_path}.tar.xz"
)
FFMPEG_TARBALL_PATH = "ffmpeg.tar.xz"
FFMPEG_SOURCE_ENV = "FFMPEG_URL_OR_PATH"

BUILD_DIR = "gdextension_build"
OUTPUT_DIR = f"{BUILD_DIR}/build"
ADDON_DIR = Path("build") / "addons" / "ffmpeg"
VENV_DIR = "venv"

# Bytes of an invalid archive echoed back for debugging
ARCHIVE_PREVIEW_BYTES = 200


class BuildError(Exception):
    exit_code = 1


class UnsupportedPlatformError(BuildError):
    def __init__(self, platform):
        super().__init__(f"Unsupported platform: {platform}")
        self.platform = platform


class NoDownloaderAvailableError(BuildError):
    def __init__(self, url):
        super().__init__(f"Error: neither wget nor curl is available to download {url}")
        self.url = url


class InvalidArchiveError(BuildError):
    def __init__(self, path, preview):
        super().__init__(f"Error: Downloaded file '{path}' is not a valid tar archive.")
        self.path = path
        self.preview = preview


class InvalidSconsFlagsError(BuildError):
    def __init__(self, flags, reason):
        super().__init__(f"Invalid SCons flags {flags!r}: {reason}")
        self.flags = flags


class ArchiveFileError(BuildError):
    def __init__(self, action, path, error):
        super().__init__(f"Error: could not {action} '{path}': {error}")
        self.path = path


class ExternalToolFailure(BuildError):
    def __init__(self, cmd, returncode):
        super().__init__(f"Command failed with exit code {returncode}: {' '.join(cmd)}")
        self.cmd = cmd
        self.exit_code = returncode


def run_command(cmd, cwd=None, env=None):
    colored_print(f"Running: {' '.join(str(c) for c in cmd)}", Colors.OKCYAN)
    try:
        subprocess.check_call([str(c) for c in cmd], cwd=cwd, env=env)
    except subprocess.CalledProcessError as e:
        raise ExternalToolFailure(e.cmd, e.returncode) from e
    except FileNotFoundError as e:
        # Same status a shell reports for a missing command
        raise ExternalToolFailure([str(c) for c in cmd], 127) from e


def default_relative_path(platform):
    """Name of the prebuilt FFmpeg tree for a platform."""
    try:
        return FFMPEG_RELATIVE_PATHS[platform]
    except KeyError:
        raise UnsupportedPlatformError(platform) from None


def is_same_file(first, second):
    if os.path.exists(first) and os.path.exists(second):
        return os.path.samefile(first, second)
    return Path(first).resolve() == Path(second).resolve()


def download_file(url, out):
    """Download with wget, falling back to curl."""
    if shutil.which("wget"):
        run_command(["wget", "-q", "--show-progress", "-O", str(out), url])
    elif shutil.which("curl"):
        run_command(["curl", "-L", "--progress-bar", "-o", str(out), url])
    else:
        raise NoDownloaderAvailableError(url)


def read_preview(path, size=ARCHIVE_PREVIEW_BYTES):
    try:
        with open(path, "rb") as f:
            return f.read(size)
    except OSError:
        return b""


def venv_python(venv_dir):
    """Interpreter inside a virtual environment (Windows or POSIX layout)."""
    windows_python = venv_dir / "Scripts" / "python.exe"
    if windows_python.exists():
        return windows_python
    return venv_dir / "bin" / "python"


def venv_environment(venv_dir, base_env=None):
    """Environment mapping equivalent to sourcing the venv's activate script."""
    env = dict(os.environ if base_env is None else base_env)
    bin_dir = venv_python(venv_dir).parent
    env["VIRTUAL_ENV"] = str(venv_dir)
    env["PATH"] = os.pathsep.join(filter(None, [str(bin_dir), env.get("PATH")]))
    env.pop("PYTHONHOME", None)
    return env


def parse_bool(value):
    return str(value).strip().lower() in ("true", "1", "yes")


class BuildConfig:
    def __init__(self, target="all", platform="linux", scons_version=SCONS_VERSION,
                 ffmpeg_relative_path="", ffmpeg_url_or_path=None,
                 ffmpeg_tarball_path=FFMPEG_TARBALL_PATH, skip_ffmpeg_import=False,
                 scons_flags=SCONS_FLAGS, pause=True, root_dir=None):
        if not ffmpeg_relative_path:
            ffmpeg_relative_path = default_relative_path(platform)
        elif platform not in FFMPEG_RELATIVE_PATHS:
            raise UnsupportedPlatformError(platform)

        self.target = target
        self.platform = platform
        self.scons_version = scons_version
        self.ffmpeg_relative_path = ffmpeg_relative_path
        self.ffmpeg_url_or_path = ffmpeg_url_or_path or FFMPEG_URL_TEMPLATE.format(
            relative_path=ffmpeg_relative_path
        )
        self.ffmpeg_tarball_path = ffmpeg_tarball_path
        self.skip_ffmpeg_import = skip_ffmpeg_import
        self.scons_flags = scons_flags
        try:
            self.scons_args = shlex.split(scons_flags)
        except ValueError as e:
            raise InvalidSconsFlagsError(scons_flags, e) from None
        self.pause = pause
        self.root_dir = Path(root_dir or Path.cwd()).absolute()

    @property
    def targets(self):
        return list(TARGETS) if self.target == "all" else [self.target]

    @property
    def ffmpeg_path(self):
        return self.root_dir / self.ffmpeg_relative_path

    @property
    def tarball(self):
        return self.root_dir / self.ffmpeg_tarball_path

    @property
    def build_dir(self):
        return self.root_dir / BUILD_DIR

    @property
    def venv_dir(self):
        return self.root_dir / VENV_DIR


def parse_arguments(argv=None, root_dir=None):
    parser = argparse.ArgumentParser(description="Build the FFmpeg GDExtension with SCons")
    parser.add_argument("target", nargs="?", default="all", choices=["all"] + TARGETS,
                        help="Build target, or 'all' for every target")
    parser.add_argument("platform", nargs="?", default="linux",
                        help="Target platform: " + ", ".join(FFMPEG_RELATIVE_PATHS))
    parser.add_argument("scons_version", nargs="?", default=SCONS_VERSION,
                        help="SCons version installed into the virtual environment")
    parser.add_argument("ffmpeg_relative_path", nargs="?", default="",
                        help="Directory name of the extracted FFmpeg tree (default depends on platform)")
    parser.add_argument("ffmpeg_url_or_path", nargs="?", default=None,
                        help=f"FFmpeg archive URL or local path (env: {FFMPEG_SOURCE_ENV})")
    parser.add_argument("ffmpeg_tarball_path", nargs="?", default=FFMPEG_TARBALL_PATH,
                        help="Where the FFmpeg archive is stored locally")
    parser.add_argument("skip_ffmpeg_import", nargs="?", default="false",
                        help="'true' to reuse an already extracted FFmpeg tree")
    parser.add_argument("scons_flags", nargs="?", default=SCONS_FLAGS,
                        help="Extra flags passed to SCons")
    parser.add_argument("--no-pause", action="store_true",
                        help="Do not wait for Enter when the build finishes")
    args = parser.parse_args(argv)

    return BuildConfig(
        target=args.target,
        platform=args.platform,
        scons_version=args.scons_version,
        ffmpeg_relative_path=args.ffmpeg_relative_path,
        ffmpeg_url_or_path=args.ffmpeg_url_or_path or os.environ.get(FFMPEG_SOURCE_ENV),
        ffmpeg_tarball_path=args.ffmpeg_tarball_path,
        skip_ffmpeg_import=parse_bool(args.skip_ffmpeg_import),
        scons_flags=args.scons_flags,
        pause=not args.no_pause,
        root_dir=root_dir,
    )


def acquire_archive(source, dest_path, skip=False):
    """Copy a local FFmpeg archive or download it to dest_path."""
    if skip:
        return

    if Path(source).is_file():
        if is_same_file(source, dest_path):
            colored_print("Given source is the same as the target. Skipping copy.", Colors.WARNING)
        else:
            colored_print("Copying FFmpeg from local path...", Colors.OKBLUE)
            try:
                shutil.copyfile(source, dest_path)
            except OSError as e:
                raise ArchiveFileError("copy FFmpeg archive to", dest_path, e) from e
    else:
        colored_print("Downloading FFmpeg...", Colors.OKBLUE)
        download_file(source, dest_path)


def validate_archive(path):
    """Make sure path is a readable tar archive and not e.g. an HTML error page."""
    try:
        with tarfile.open(path) as tf:
            tf.getnames()
    except (tarfile.TarError, EOFError, OSError) as e:
        raise InvalidArchiveError(path, read_preview(path)) from e


def extract_archive(path, dest):
    # Members and link targets must stay inside dest
    kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
    try:
        with tarfile.open(path) as tf:
            tf.extractall(dest, **kwargs)
    except (tarfile.TarError, OSError) as e:
        raise ArchiveFileError("extract", path, e) from e
    colored_print("FFmpeg extracted.", Colors.OKGREEN)


def report_invalid_archive(error):
    err = sys.stderr
    colored_print(str(error), Colors.FAIL, file=err)
    print("The URL may be wrong or blocked. You can:", file=err)
    print(" - Manually download the FFmpeg tar.xz from the Releases page and pass"
          " its local path as the 5th argument", file=err)
    print(f" - Or set the {FFMPEG_SOURCE_ENV} environment variable to a local .tar.xz path",
          file=err)
    print(f"First {ARCHIVE_PREVIEW_BYTES} bytes of the file for debugging:", file=err)
    print(error.preview.decode("utf-8", errors="replace"), file=err)


def list_tree(root):
    """Print a directory tree the way `ls -R` does."""
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        print(f"{dirpath}:")
        for name in sorted(dirnames + filenames):
            print(name)
        print()


def _raise(error):
    raise error


class FFmpegExtensionBuild:
    def __init__(self, config):
        self.config = config

    def setup_ffmpeg(self):
        config = self.config
        if config.skip_ffmpeg_import:
            colored_print("Skipping FFmpeg import.", Colors.WARNING)
            return

        colored_print(f"Setting up FFmpeg. Source: {config.ffmpeg_url_or_path}", Colors.OKBLUE)
        acquire_archive(config.ffmpeg_url_or_path, config.tarball)
        validate_archive(config.tarball)
        extract_archive(config.tarball, config.root_dir)

    def setup_environment(self):
        config = self.config
        run_command(["git", "submodule", "update", "--init", "--recursive"], cwd=config.root_dir)

        colored_print("Setting up SCons", Colors.OKBLUE)
        python = venv_python(config.venv_dir)
        if python.exists():
            colored_print(f"Reusing virtual environment at {config.venv_dir}", Colors.OKCYAN)
        else:
            run_command([sys.executable, "-m", "venv", config.venv_dir], cwd=config.root_dir)
            python = venv_python(config.venv_dir)

        env = venv_environment(config.venv_dir)
        run_command([python, "-m", "pip", "install", "--upgrade", "pip"], env=env)
        run_command([python, "-m", "pip", "install", f"scons=={config.scons_version}"], env=env)

        try:
            version = subprocess.run(
                [str(python), "-m", "SCons", "--version"],
                capture_output=True, text=True, env=env,
            ).stdout.strip()
        except OSError:
            version = ""
        colored_print(f"SCons {version or config.scons_version} installed.", Colors.OKGREEN)

    def setup(self):
        colored_print(
            f"Setting up to build for {self.config.target} with SCons {self.config.scons_version}",
            Colors.HEADER,
        )
        self.setup_ffmpeg()
        self.setup_environment()
        colored_print("Setup complete.", Colors.OKGREEN)

    def build_environment(self):
        config = self.config
        env = venv_environment(config.venv_dir)
        env["SCONS_FLAGS"] = config.scons_flags
        env["SCONS_CACHE"] = SCONS_CACHE_DIR
        env["SCONS_CACHE_LIMIT"] = SCONS_CACHE_LIMIT
        env["FFMPEG_PATH"] = str(config.ffmpeg_path)
        return env

    def build(self, target):
        """Run SCons for a single target."""
        config = self.config
        print(f"\n{'='*60}")
        colored_print(f"Building {target} for {config.platform}...", Colors.OKBLUE)
        print(f"{'='*60}\n")

        env = self.build_environment()
        scons_cmd = [
            venv_python(config.venv_dir), "-m", "SCons",
            "--debug=explain",
            f"platform={config.platform}",
            f"target={target}",
            f"ffmpeg_path={env['FFMPEG_PATH']}",
        ]
        scons_cmd.extend(config.scons_args)
        run_command(scons_cmd, cwd=config.build_dir, env=env)

        self.show_build_results()

    def show_build_results(self):
        try:
            list_tree(self.config.build_dir / ADDON_DIR)
        except OSError:
            colored_print("Build directory not found or ls failed.", Colors.WARNING)

    def cleanup(self):
        colored_print("Cleaning up...", Colors.OKBLUE)
        self.config.tarball.unlink(missing_ok=True)
        colored_print("Cleanup complete.", Colors.OKGREEN)
        print(f"The built addons folder is located at '{OUTPUT_DIR}'.")

    def run(self):
        self.setup()

        for target in self.config.targets:
            self.build(target)

        if self.config.target == "all":
            colored_print("Builds completed.", Colors.OKGREEN)
        else:
            colored_print(f"{self.config.target} build completed.", Colors.OKGREEN)

        self.cleanup()


def main(argv=None):
    try:
        config = parse_arguments(argv)
        FFmpegExtensionBuild(config).run()
    except InvalidArchiveError as e:
        report_invalid_archive(e)
        return e.exit_code
    except BuildError as e:
        colored_print(str(e), Colors.FAIL, file=sys.stderr)
        return e.exit_code

    if config.pause and sys.stdin.isatty():
        input("Press [Enter] key to continue...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
