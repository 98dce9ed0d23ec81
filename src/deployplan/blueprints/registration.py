# blueprints/registration.py
# Registers an Azure tenant with the security product: an application
# registration for the product, role assignments for it, indicator-of-attack
# (IOA) log forwarding through Event Hubs, and the product-side registration.
#
# Every step that consumes another step's output carries (at least) that
# step's condition; `deployplan validate --plan builtin:registration` proves it.
from __future__ import annotations

from typing import List

from ..dsl import build, config, output, plan as _plan, step
from ..model import Scope, Step

PLAN_NAME = "registration"

MODULES = "modules"

IOA = "ioa-infrastructure"
APP = "app-registration"
POLICY = "activity-log-diagnostics-policy"
REGISTRATION = "product-registration"


def _ioa_inputs() -> dict:
    return {
        "eventHubNamespace": output(IOA, "eventHubNamespace"),
        "eventHubAuthorizationRuleId": output(IOA, "eventHubAuthorizationRuleId"),
    }


def plan() -> List[Step]:
    return _plan(
        step(
            APP,
            f"{MODULES}/appRegistration.bicep",
            scope=Scope.TENANT,
            inputs={
                "displayName": "security-integration",
                "productRegion": config("product_region"),
            },
            outputs=["applicationId", "servicePrincipalId"],
            apply_tags=False,
        ),

        # ---- permissions ----
        step(
            "role-assignments-mg",
            f"{MODULES}/roleAssignments.bicep",
            scope=Scope.MANAGEMENT_GROUP,
            when="scope == 'management-group' and assign_permissions",
            inputs={
                "principalId": output(APP, "servicePrincipalId"),
                "managementGroupId": config("management_group_id"),
            },
            apply_tags=False,
        ),
        step(
            "role-assignments-sub",
            f"{MODULES}/roleAssignments.bicep",
            scope=Scope.SUBSCRIPTION,
            when="scope == 'subscription' and assign_permissions",
            inputs={
                "principalId": output(APP, "servicePrincipalId"),
                "subscriptionId": config("subscription_id"),
            },
            apply_tags=False,
        ),

        # ---- IOA log forwarding ----
        step(
            IOA,
            f"{MODULES}/ioaInfrastructure.bicep",
            scope=Scope.SUBSCRIPTION,
            when="deploy_ioa",
            inputs={
                "location": config("location"),
                "resourceGroupName": config("resource_group_name"),
            },
            outputs=[
                "eventHubNamespace",
                "eventHubAuthorizationRuleId",
                "activityLogEventHubName",
                "entraLogEventHubName",
            ],
        ),
        step(
            "activity-log-diagnostics-sub",
            f"{MODULES}/activityLogDiagnosticSettings.bicep",
            scope=Scope.SUBSCRIPTION,
            when="scope == 'subscription' and deploy_ioa and deploy_activity_log_diagnostics",
            inputs={
                **_ioa_inputs(),
                "eventHubName": output(IOA, "activityLogEventHubName"),
            },
            apply_tags=False,
        ),
        step(
            POLICY,
            f"{MODULES}/activityLogDiagnosticSettingsPolicy.bicep",
            scope=Scope.MANAGEMENT_GROUP,
            when="scope == 'management-group' and deploy_ioa and deploy_activity_log_policy",
            inputs={
                **_ioa_inputs(),
                "eventHubName": output(IOA, "activityLogEventHubName"),
                "location": config("location"),
            },
            outputs=["policyAssignmentId", "policyPrincipalId"],
            apply_tags=False,
        ),
        # The policy's managed identity needs rights to deploy diagnostic
        # settings into every subscription below the management group.
        build("policy-remediation-roles")
        .target(f"{MODULES}/policyRemediationRoles.bicep")
        .at(Scope.MANAGEMENT_GROUP)
        .when(f"included('{POLICY}')")
        .when("assign_permissions")
        .with_inputs(principalId=output(POLICY, "policyPrincipalId"))
        .without_tags(),
        step(
            "entra-log-diagnostics",
            f"{MODULES}/entraLogDiagnosticSettings.bicep",
            scope=Scope.TENANT,
            when="deploy_ioa and deploy_entra_log_diagnostics",
            inputs={
                **_ioa_inputs(),
                "eventHubName": output(IOA, "entraLogEventHubName"),
            },
            apply_tags=False,
        ),
        step(
            "realtime-visibility",
            f"{MODULES}/realtimeVisibility.bicep",
            scope=Scope.SUBSCRIPTION,
            when=f"deploy_realtime_visibility and included('{IOA}')",
            inputs={
                "eventHubNamespace": output(IOA, "eventHubNamespace"),
                "location": config("location"),
            },
        ),

        # ---- product side ----
        step(
            REGISTRATION,
            f"{MODULES}/productRegistration.bicep",
            scope=Scope.SUBSCRIPTION,
            inputs={
                "clientId": config("client_id"),
                "clientSecret": config("client_secret"),
                "productRegion": config("product_region"),
                "targetScope": config("scope"),
                "managementGroupId": config("management_group_id"),
                "subscriptionId": config("subscription_id"),
                "applicationId": output(APP, "applicationId"),
            },
            # ordering only: register once permissions are in place
            depends_on=["role-assignments-mg", "role-assignments-sub"],
            outputs=["registrationId"],
        ),
        step(
            "ioa-registration",
            f"{MODULES}/ioaRegistration.bicep",
            scope=Scope.SUBSCRIPTION,
            when=f"included('{IOA}')",
            inputs={
                "registrationId": output(REGISTRATION, "registrationId"),
                "clientId": config("client_id"),
                "clientSecret": config("client_secret"),
                "activityLogEventHubName": output(IOA, "activityLogEventHubName"),
                "entraLogEventHubName": output(IOA, "entraLogEventHubName"),
                "eventHubNamespace": output(IOA, "eventHubNamespace"),
            },
            depends_on=[POLICY, "activity-log-diagnostics-sub", "entra-log-diagnostics"],
            apply_tags=False,
        ),
    )
