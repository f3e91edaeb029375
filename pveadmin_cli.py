#!/usr/bin/env python3
"""
Proxmox Admin CLI Tool

Command-line interface for the same operations the admin web interface offers.

Usage:
    python pveadmin_cli.py <command> [options]

Commands:
    user        Realm user operations (list, create, delete, import)
    vm          VM operations (templates, deploy, status, stop, active)

Use --help with any command for detailed options.
"""

import argparse
import getpass
import sys
import logging

from pveadmin import AdminManager, PveAdminError, load_infra_config, load_secrets

logger = logging.getLogger(__name__)


def setup_user_commands(subparsers):
    """Set up user management commands."""
    user_parser = subparsers.add_parser("user", help="User management operations")
    user_subparsers = user_parser.add_subparsers(
        dest="user_command", help="User commands"
    )

    # List users
    list_parser = user_subparsers.add_parser("list", help="List users")
    list_parser.add_argument(
        "--realm", help="Filter by realm (default: configured realm)"
    )
    list_parser.add_argument(
        "--all", action="store_true", help="List users of every realm"
    )

    # Create user
    create_parser = user_subparsers.add_parser("create", help="Create a user")
    create_parser.add_argument(
        "userid", help="Full user ID including realm (e.g., jdoe@pve)"
    )
    create_parser.add_argument("full_name", help="Display name")
    create_parser.add_argument(
        "--password", help="Initial password (prompted for if omitted)"
    )
    create_parser.add_argument("--email", help="Email stored in the comment field")

    # Delete user
    delete_parser = user_subparsers.add_parser("delete", help="Delete a user")
    delete_parser.add_argument(
        "userid", help="Full user ID including realm (e.g., jdoe@pve)"
    )

    # Bulk import
    import_parser = user_subparsers.add_parser(
        "import", help="Create users from a CSV file (first_name,last_name,password)"
    )
    import_parser.add_argument("csv_file", help="Path to the CSV file")


def setup_vm_commands(subparsers):
    """Set up VM management commands."""
    vm_parser = subparsers.add_parser("vm", help="VM management operations")
    vm_subparsers = vm_parser.add_subparsers(dest="vm_command", help="VM commands")

    vm_subparsers.add_parser("templates", help="List available templates")

    deploy_parser = vm_subparsers.add_parser(
        "deploy", help="Deploy a VM from a template"
    )
    deploy_parser.add_argument("template", help="Template name")
    deploy_parser.add_argument("username", help="Owner of the new VM")
    deploy_parser.add_argument(
        "--memory", type=int, default=2048, help="Memory in MB (default: 2048)"
    )
    deploy_parser.add_argument(
        "--cores", type=int, default=2, help="CPU cores (default: 2)"
    )

    status_parser = vm_subparsers.add_parser("status", help="Show VM status")
    status_parser.add_argument("vmid", help="VM ID")

    stop_parser = vm_subparsers.add_parser("stop", help="Stop and destroy a VM")
    stop_parser.add_argument("vmid", help="VM ID")
    stop_parser.add_argument("username", help="Owner of the VM")

    active_parser = vm_subparsers.add_parser(
        "active", help="List VM IDs associated with a user"
    )
    active_parser.add_argument("username", help="Username to look for")


def handle_user_commands(args, manager: AdminManager):
    """Handle user management commands."""
    if args.user_command == "list":
        if args.all:
            users = manager.users.list_users()
        else:
            users = manager.users.list_realm_users(args.realm or manager.realm)
        print(f"{'User ID':<30} {'Enabled':<8} {'Email':<25} {'Name'}")
        print("-" * 80)
        for user in users:
            print(
                f"{user.userid:<30} {('yes' if user.enabled else 'no'):<8} {user.email:<25} {user.full_name}"
            )

    elif args.user_command == "create":
        password = args.password or getpass.getpass("Password: ")
        user = manager.users.create_user(
            args.userid, args.full_name, password, email=args.email
        )
        print(f"Successfully created user {user.userid}")

    elif args.user_command == "delete":
        out = manager.users.delete_user(args.userid)
        print(f"Successfully deleted user {out['userid']}")

    elif args.user_command == "import":
        with open(args.csv_file, encoding="utf-8-sig") as f:
            summary = manager.imports.import_users(f.read())
        for result in summary.results:
            if result.ok:
                print(f"  ✓ {result.userid} ({result.full_name})")
            else:
                print(f"  ✗ {result.userid or '-'}: {result.error}")
        print(
            f"Import finished: {summary.total} rows, {summary.success} succeeded, "
            f"{summary.failed} failed"
        )
        return 0 if summary.failed == 0 else 1

    return 0


def handle_vm_commands(args, manager: AdminManager):
    """Handle VM management commands."""
    if args.vm_command == "templates":
        templates = manager.vms.list_templates()
        print(f"{'ID':<30} {'Name'}")
        print("-" * 50)
        for template in templates:
            print(f"{template.id:<30} {template.name}")

    elif args.vm_command == "deploy":
        print("Deploying, this can take up to a minute...")
        record = manager.vms.deploy(
            args.template, args.username, memory=args.memory, cores=args.cores
        )
        address = record.ip_address or "pending (check the Proxmox console)"
        print(f"Deployed VM {record.vmid} ({record.name})")
        print(f"  Address: {address}")
        print(f"  Expires: {record.expires_at}")

    elif args.vm_command == "status":
        record = manager.vms.status(args.vmid)
        print(f"VM {record.vmid} ({record.name or 'Unknown'})")
        print(f"  Status:  {record.status}")
        print(f"  Address: {record.ip_address or 'Unknown'}")
        print(f"  Owner:   {record.owner or 'Unknown'}")
        print(f"  Expires: {record.expires_at or 'Unknown'}")

    elif args.vm_command == "stop":
        out = manager.vms.stop(args.vmid, args.username)
        print(f"VM {out['vmid']}: {out['message']}")

    elif args.vm_command == "active":
        vmids = manager.vms.list_active_vmids_for_user(args.username)
        if vmids:
            print(" ".join(str(vmid) for vmid in vmids))
        else:
            print(f"No VMs found for {args.username}")

    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Proxmox User & VM Admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s user list
  %(prog)s user create jdoe@pve "John Doe"
  %(prog)s user import students.csv
  %(prog)s vm deploy kali jdoe --memory 4096
  %(prog)s vm stop 4242 jdoe
        """,
    )

    parser.add_argument("--config", help="Path to secrets.toml config file")
    parser.add_argument("--infra", help="Path to infra.toml config file")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Set up command parsers
    setup_user_commands(subparsers)
    setup_vm_commands(subparsers)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        # Load configuration and create manager
        secrets = load_secrets(args.config)
        infra = load_infra_config(args.infra) if args.infra else None
        manager = AdminManager(secrets, infra)

        # Route to appropriate handler
        if args.command == "user":
            return handle_user_commands(args, manager)
        elif args.command == "vm":
            return handle_vm_commands(args, manager)
        return 0

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except (PveAdminError, OSError) as e:
        logger.error(f"Error: {e}")
        if args.verbose:
            import traceback

            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
