"""
Lab Services Package

Modules:
    command_runner: Local subprocesses (terraform, ssh).
    terraform: tfvars rendering, plan/apply/destroy, outputs.
    remote_client: PowerShell remoting over WS-Man (pypsrp).
    winrm_setup: First-boot bootstrap and WinRM/CredSSP baseline.
    firewall: Lab firewall rules, created when missing.
    wmi_permissions: WMI namespace DACL edits.
    hyperv: Hyper-V role, NAT switch, ISO and guest VMs.
    kickstart: Guest kickstart rendering.
    guest_provisioner: SSH post-install and cloud-init diagnostics.
    cluster: Failover cluster, witness, S2D and volumes.
    diagnostics: Read-only health report.
    lab_workflow: The ordered deploy recipe.
"""
