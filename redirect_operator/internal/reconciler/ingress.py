from kubernetes import client

from redirect_operator.internal.domain.models import Redirect

# Port of this operator's own redirect listener, which every generated Ingress points at
INGRESS_BACKEND_PORT = 8080


def ingress_name_for_redirect(redirect: Redirect) -> str:
    return f"{redirect.metadata.namespace}.{redirect.metadata.name}"


def ingress_backend(service_name: str) -> client.V1IngressBackend:
    return client.V1IngressBackend(
        service=client.V1IngressServiceBackend(
            name=service_name,
            port=client.V1ServiceBackendPort(number=INGRESS_BACKEND_PORT),
        )
    )


def ingress_for_redirect(redirect: Redirect, self_namespace: str, self_service_name: str) -> client.V1Ingress:
    """
    Builds the Ingress that routes a Redirect's hosts to this operator.

    Args:
        redirect: The Redirect to build the Ingress for.
        self_namespace: Namespace the operator (and therefore the Ingress) lives in.
        self_service_name: Service fronting the operator's redirect listener.

    Returns:
        V1Ingress: One rule per host (sorted), all sending "/" to the operator's service.
        The TLS block is only present if the Redirect enables it.
    """
    redirect_ingress = redirect.spec.ingress
    hosts = sorted(redirect.spec.hosts)

    tls = None
    if redirect_ingress.tls.enabled:
        tls = [client.V1IngressTLS(
            hosts=hosts,
            secret_name=redirect_ingress.tls.secret_name or f"{redirect.metadata.name}-tls-certs",
        )]

    http_rule = client.V1HTTPIngressRuleValue(paths=[
        client.V1HTTPIngressPath(
            backend=ingress_backend(self_service_name),
            path="/",
            path_type="Prefix",
        )
    ])
    rules = [client.V1IngressRule(host=host, http=http_rule) for host in hosts]

    return client.V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=client.V1ObjectMeta(
            name=ingress_name_for_redirect(redirect),
            namespace=self_namespace,
            # Cannot set owner references across namespaces; cleanup is finalizer-driven.
            # The user's labels become annotations and vice versa.
            annotations=dict(redirect_ingress.labels) if redirect_ingress.labels is not None else None,
            labels=dict(redirect_ingress.annotations) if redirect_ingress.annotations is not None else None,
        ),
        spec=client.V1IngressSpec(
            ingress_class_name=redirect_ingress.ingress_class_name,
            rules=rules,
            tls=tls,
        ),
    )
