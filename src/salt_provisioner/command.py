"""salt-call command line construction and privilege elevation."""

from .config import DEFAULT_PILLAR_ROOT_DIR, DEFAULT_STATE_TREE_DIR, ProvisioningConfig

SALT_CALL = "salt-call --local"
DEFAULT_SALT_LOG_LEVEL = "info"


def build_command(config: ProvisioningConfig) -> str:
    """Build the masterless salt-call invocation for ``config``.

    The result only depends on ``config``, so calling it twice yields the
    same string.
    """
    args = [SALT_CALL]

    if config.custom_state:
        args.append(f"state.sls {config.custom_state}")
    else:
        args.append("state.highstate")

    # With a minion config the roots come from the minion's own file_roots/pillar_roots
    if config.minion_config_file is None:
        args.append(f"--file-root={config.remote_state_tree or DEFAULT_STATE_TREE_DIR}")
        args.append(f"--pillar-root={config.remote_pillar_roots or DEFAULT_PILLAR_ROOT_DIR}")

    if not config.no_exit_on_failure:
        args.append("--retcode-passthrough")

    args.append(f"-l {config.log_level or DEFAULT_SALT_LOG_LEVEL}")

    if config.extra_call_args:
        args.append(config.extra_call_args)

    return " ".join(args)


def elevate(command: str, *, disable_sudo: bool = False, sudo_password: str = "") -> str:
    """Prefix ``command`` with sudo according to the elevation settings.

    A configured password is echoed into ``sudo -S`` unescaped, so it shows up
    in the remote process list and must not contain a single quote.
    """
    if disable_sudo:
        return command

    if sudo_password:
        return f"echo '{sudo_password}' | sudo -S {command}"

    return f"sudo {command}"
