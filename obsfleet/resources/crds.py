import kubernetes as k8s

OBSERVABILITY_GROUP = "observability.open-cluster-management.io"

ADDON_SPEC = k8s.client.V1JSONSchemaProps(
    type="object",
    properties={
        # collect metrics from the managed cluster at all
        "enableMetrics": k8s.client.V1JSONSchemaProps(type="boolean", default=True),
        # the push interval of the metrics collector in seconds
        "interval": k8s.client.V1JSONSchemaProps(
            type="integer", default=300, minimum=15, maximum=3600
        ),
    },
)

STORAGE_SIZE = k8s.client.V1JSONSchemaProps(type="string")


def _status_schema() -> k8s.client.V1JSONSchemaProps:
    return k8s.client.V1JSONSchemaProps(
        type="object", x_kubernetes_preserve_unknown_fields=True
    )


def create_observability_definition() -> k8s.client.V1CustomResourceDefinition:
    spec_props = k8s.client.V1JSONSchemaProps(
        type="object",
        properties={
            "imagePullPolicy": k8s.client.V1JSONSchemaProps(
                type="string", enum=["Always", "IfNotPresent", "Never"]
            ),
            "imagePullSecret": k8s.client.V1JSONSchemaProps(type="string"),
            "nodeSelector": k8s.client.V1JSONSchemaProps(
                type="object",
                additional_properties=k8s.client.V1JSONSchemaProps(type="string"),
            ),
            "tolerations": k8s.client.V1JSONSchemaProps(
                type="array",
                items=k8s.client.V1JSONSchemaProps(
                    type="object", x_kubernetes_preserve_unknown_fields=True
                ),
            ),
            "storageConfig": k8s.client.V1JSONSchemaProps(
                type="object",
                properties={
                    # reference to the secret holding the Thanos object storage configuration
                    "metricObjectStorage": k8s.client.V1JSONSchemaProps(
                        type="object",
                        required=["name", "key"],
                        properties={
                            "name": k8s.client.V1JSONSchemaProps(type="string"),
                            "key": k8s.client.V1JSONSchemaProps(type="string"),
                        },
                    ),
                    "storageClass": k8s.client.V1JSONSchemaProps(type="string"),
                    "alertmanagerStorageSize": STORAGE_SIZE,
                    "ruleStorageSize": STORAGE_SIZE,
                    "compactStorageSize": STORAGE_SIZE,
                    "receiveStorageSize": STORAGE_SIZE,
                    "storeStorageSize": STORAGE_SIZE,
                },
            ),
            "retentionConfig": k8s.client.V1JSONSchemaProps(
                type="object",
                additional_properties=k8s.client.V1JSONSchemaProps(type="string"),
            ),
            "observabilityAddonSpec": ADDON_SPEC,
        },
    )
    schema_props = k8s.client.V1JSONSchemaProps(
        type="object",
        properties={"spec": spec_props, "status": _status_schema()},
    )

    def_spec = k8s.client.V1CustomResourceDefinitionSpec(
        group=OBSERVABILITY_GROUP,
        names=k8s.client.V1CustomResourceDefinitionNames(
            kind="MultiClusterObservability",
            plural="multiclusterobservabilities",
            short_names=["mco"],
        ),
        scope="Cluster",
        versions=[
            k8s.client.V1CustomResourceDefinitionVersion(
                name="v1beta2",
                served=True,
                storage=True,
                subresources=k8s.client.V1CustomResourceSubresources(status={}),
                schema=k8s.client.V1CustomResourceValidation(
                    open_apiv3_schema=schema_props
                ),
            )
        ],
    )

    return k8s.client.V1CustomResourceDefinition(
        api_version="apiextensions.k8s.io/v1",
        kind="CustomResourceDefinition",
        spec=def_spec,
        metadata=k8s.client.V1ObjectMeta(
            name=f"multiclusterobservabilities.{OBSERVABILITY_GROUP}",
        ),
    )


def create_addon_definition() -> k8s.client.V1CustomResourceDefinition:
    schema_props = k8s.client.V1JSONSchemaProps(
        type="object",
        properties={"spec": ADDON_SPEC, "status": _status_schema()},
    )

    def_spec = k8s.client.V1CustomResourceDefinitionSpec(
        group=OBSERVABILITY_GROUP,
        names=k8s.client.V1CustomResourceDefinitionNames(
            kind="ObservabilityAddon",
            plural="observabilityaddons",
            short_names=["oba"],
        ),
        scope="Namespaced",
        versions=[
            k8s.client.V1CustomResourceDefinitionVersion(
                name="v1beta1",
                served=True,
                storage=True,
                subresources=k8s.client.V1CustomResourceSubresources(status={}),
                schema=k8s.client.V1CustomResourceValidation(
                    open_apiv3_schema=schema_props
                ),
            )
        ],
    )

    return k8s.client.V1CustomResourceDefinition(
        api_version="apiextensions.k8s.io/v1",
        kind="CustomResourceDefinition",
        spec=def_spec,
        metadata=k8s.client.V1ObjectMeta(
            name=f"observabilityaddons.{OBSERVABILITY_GROUP}",
        ),
    )
